from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError

UNRESOLVED_MODES = ('fail', 'skip')

_TRUE_VALUES = ('true', 't', '1', 'yes', 'y', 'on')
_FALSE_VALUES = ('false', 'f', '0', 'no', 'n', 'off', '')


@dataclass(frozen=True)
class Config:
    """Runtime options for a :class:`~berryorm.session.Session`.

    Attributes:
        on_unresolved_type: What the materializer does with a row whose
            discriminator value is not registered: ``"fail"`` aborts the whole
            fetch, ``"skip"`` drops the row and logs a warning.
        log_statements: Debug-log every compiled statement with its values.
    """

    on_unresolved_type: str = 'fail'
    log_statements: bool = False

    def __post_init__(self):
        if self.on_unresolved_type not in UNRESOLVED_MODES:
            raise ConfigurationError(
                f"on_unresolved_type must be one of {UNRESOLVED_MODES}, got {self.on_unresolved_type!r}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, prefix: str = 'BERRYORM_') -> "Config":
        env = os.environ if environ is None else environ
        mode = env.get(prefix + 'ON_UNRESOLVED_TYPE', 'fail').strip().lower()
        raw = env.get(prefix + 'LOG_STATEMENTS', '').strip().lower()
        if raw in _TRUE_VALUES:
            log_statements = True
        elif raw in _FALSE_VALUES:
            log_statements = False
        else:
            raise ConfigurationError(f"Invalid boolean for {prefix}LOG_STATEMENTS: {raw!r}")
        return cls(on_unresolved_type=mode, log_statements=log_statements)
