"""Code-tagged warnings for recoverable export problems."""

from __future__ import annotations

import warnings
from dataclasses import dataclass

from geotiler.errors import ValidationError

CODE_DESCRIPTIONS: dict[str, str] = {
    "W01": "texture could not be decoded; the material slot is left empty",
    "W02": "material index out of range; clamped to material 0",
    "W03": "optional vertex attribute length does not match positions; attribute dropped",
}

KNOWN_CODES: frozenset[str] = frozenset(CODE_DESCRIPTIONS)


class GeotilerWarning(UserWarning):
    """Warning carrying one of the ``KNOWN_CODES``."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(f"[{code}] {message}")


@dataclass(frozen=True)
class WarningPolicy:
    """Per-code overrides: drop a warning, or turn it into a hard failure."""

    warn_as_error: frozenset[str] = frozenset()
    suppress: frozenset[str] = frozenset()

    def is_strict(self, code: str) -> bool:
        return code in self.warn_as_error and code not in self.suppress


def emit_warning(code: str, message: str, *, policy: WarningPolicy | None = None) -> None:
    """Report a recoverable problem.

    Suppressed codes are dropped, codes listed in ``warn_as_error`` raise
    ``ValidationError``, everything else becomes a ``GeotilerWarning``.
    """
    if policy is not None:
        if code in policy.suppress:
            return
        if policy.is_strict(code):
            raise ValidationError(f"[{code}] {message}")

    warnings.warn(GeotilerWarning(code, message), stacklevel=3)


def parse_code_list(raw: str) -> frozenset[str]:
    """Turn ``"W01, W03"`` into a set of codes, rejecting unknown ones with ``ValueError``."""
    tokens = {token.strip().upper() for token in raw.split(",")}
    tokens.discard("")
    unknown = sorted(tokens - KNOWN_CODES)
    if unknown:
        raise ValueError(
            f"Unknown warning code(s): {', '.join(unknown)} (known: {sorted(KNOWN_CODES)})"
        )
    return frozenset(tokens)
