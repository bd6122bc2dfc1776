"""Parsing of human resource strings ("2GB", "512MiB", "1.5").

Sizes are binary: ``GB`` and ``GiB`` both mean 1024**3 so that config
limits line up with plan quotas.
"""

from __future__ import annotations

import re

from supamanager.core.errors import ValidationError

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")
_MULTIPLIERS = {
    "": 1,
    "b": 1,
    "k": 1024, "kb": 1024, "kib": 1024,
    "m": 1024**2, "mb": 1024**2, "mib": 1024**2,
    "g": 1024**3, "gb": 1024**3, "gib": 1024**3,
    "t": 1024**4, "tb": 1024**4, "tib": 1024**4,
}


def parse_size(raw: str | int | None) -> int | None:
    """Bytes for ``raw``; ``None``/empty stays ``None``.

    >>> parse_size("2GB")
    2147483648
    >>> parse_size("512MiB")
    536870912
    """
    if raw is None:
        return None
    if isinstance(raw, int):
        return raw
    if not raw.strip():
        return None
    match = _SIZE_RE.match(raw)
    if not match or match.group(2).lower() not in _MULTIPLIERS:
        raise ValidationError(f"invalid size: {raw!r}").with_context(value=raw)
    number, unit = match.groups()
    return int(float(number) * _MULTIPLIERS[unit.lower()])


def parse_cpus(raw: str | float | None) -> float | None:
    """CPU cores for ``raw`` ("1.0", "0.5", "500m")."""
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = raw.strip()
        if not text:
            return None
        try:
            value = float(text[:-1]) / 1000 if text.endswith("m") else float(text)
        except ValueError as exc:
            raise ValidationError(f"invalid cpu limit: {raw!r}", cause=exc).with_context(value=raw) from exc
    if value <= 0:
        raise ValidationError(f"cpu limit must be positive: {raw!r}").with_context(value=raw)
    return value
