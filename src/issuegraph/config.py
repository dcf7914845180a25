from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
import re
from typing import Any

import tomllib

from .ranking import RankingWeights


CONFIG_FILENAME = "issuegraph.toml"
_PREFIX_RE = re.compile(r"^[a-z][a-z0-9_-]*$")


@dataclass(frozen=True)
class IssuegraphConfig:
    path: Path | None = None
    ranking: RankingWeights = field(default_factory=RankingWeights)
    id_prefix: str = "issue"


class ConfigValidationError(ValueError):
    pass


def _as_number(value: object, *, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigValidationError(f"{field} must be a number")
    if value < 0:
        raise ConfigValidationError(f"{field} must not be negative")
    return value


def _parse_ranking(raw: object) -> RankingWeights:
    if raw is None:
        return RankingWeights()
    if not isinstance(raw, dict):
        raise ConfigValidationError("[ranking] must be a table")

    known = {item.name for item in fields(RankingWeights)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigValidationError(f"unknown [ranking] keys: {', '.join(unknown)}")

    values = {
        key: _as_number(value, field=f"ranking.{key}") for key, value in raw.items()
    }
    decay = values.get("transitive_decay")
    if decay is not None and decay > 1:
        raise ConfigValidationError("ranking.transitive_decay must be between 0 and 1")
    return RankingWeights(**values)


def _parse_store(raw: object) -> str:
    if raw is None:
        return "issue"
    if not isinstance(raw, dict):
        raise ConfigValidationError("[store] must be a table")
    prefix = raw.get("id_prefix", "issue")
    if not isinstance(prefix, str) or not _PREFIX_RE.match(prefix.strip()):
        raise ConfigValidationError("store.id_prefix must match [a-z][a-z0-9_-]*")
    return prefix.strip()


def parse_config(raw: dict[str, Any], *, path: Path | None = None) -> IssuegraphConfig:
    return IssuegraphConfig(
        path=path,
        ranking=_parse_ranking(raw.get("ranking")),
        id_prefix=_parse_store(raw.get("store")),
    )


def find_config(cwd: Path | None = None, *, state_dir: Path | None = None) -> Path | None:
    """Locate ``issuegraph.toml`` in ``cwd`` or, failing that, the state dir."""
    candidates = [(cwd or Path.cwd()) / CONFIG_FILENAME]
    if state_dir is not None:
        candidates.append(state_dir / CONFIG_FILENAME)
    for path in candidates:
        if path.is_file():
            return path
    return None


def load_config(
    cwd: Path | None = None,
    *,
    state_dir: Path | None = None,
) -> IssuegraphConfig:
    path = find_config(cwd, state_dir=state_dir)
    if path is None:
        return IssuegraphConfig()
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigValidationError(f"invalid TOML in {path.name}: {exc}") from exc
    try:
        return parse_config(raw, path=path)
    except ConfigValidationError as exc:
        raise ConfigValidationError(f"{path.name}: {exc}") from exc
