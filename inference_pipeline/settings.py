from __future__ import annotations

import os
from collections.abc import Mapping


def resolve_env(environ: Mapping[str, str] | None = None) -> Mapping[str, str]:
    return os.environ if environ is None else environ


def env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    return env_bool(resolve_env(environ), "INFER_REQUIRE_TRUESTACK", default=False)
