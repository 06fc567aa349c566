"""Session identity: preference string -> session id and provider/model.

Pure functions, no I/O.
"""
from __future__ import annotations

import hashlib

from .models import ModelPreference, SessionDescriptor

DEFAULT_SESSION_ID = "default"


def derive_session_id(preference: str | None) -> str:
    """Return a stable 8-character id for *preference*.

    Blank preferences share the ``"default"`` session. The id is a
    truncated MD5 digest, so collisions are possible and not detected.
    """
    if not preference or not preference.strip():
        return DEFAULT_SESSION_ID
    return hashlib.md5(preference.encode("utf-8")).hexdigest()[:8]


def parse_preference(preference: str | None) -> ModelPreference:
    """Split a preference into provider and model.

    Tried in order: ``provider,model``; ``provider/model``; bare model
    name. Never raises; anything else is kept whole as the model.
    """
    raw = preference or ""
    if not raw.strip():
        return ModelPreference(raw=raw)

    parts = [p.strip() for p in raw.split(",")]
    if len(parts) == 2:
        return ModelPreference(raw=raw, provider=parts[0], model=parts[1])

    if len(parts) == 1:
        sub_parts = parts[0].split("/")
        if len(sub_parts) == 2:
            return ModelPreference(raw=raw, provider=sub_parts[0], model=sub_parts[1])
        return ModelPreference(raw=raw, model=parts[0])

    return ModelPreference(raw=raw, model=raw.strip())


def build_model_overrides(descriptor: SessionDescriptor) -> dict[str, str]:
    """Environment variables handed to a spawned worker."""
    overrides: dict[str, str] = {}
    if descriptor.provider and descriptor.model:
        overrides["OVERRIDE_MODEL"] = f"{descriptor.provider},{descriptor.model}"
    elif descriptor.model:
        overrides["OVERRIDE_MODEL"] = descriptor.model

    overrides["CCR_MODEL_PREFERENCE"] = descriptor.preference
    overrides["CCR_SESSION_ID"] = descriptor.session_id
    if descriptor.port is not None:
        overrides["CCR_SESSION_PORT"] = str(descriptor.port)
    return overrides
