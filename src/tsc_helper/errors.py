# SPDX-License-Identifier: MIT
"""Exception hierarchy shared by every stage of the pipeline."""


class TscHelperError(Exception):
    """Base class for errors that abort a tsc-helper run."""

    pass


class ConfigError(TscHelperError):
    """Raised when options, an import map, or a generated file is invalid."""

    pass
