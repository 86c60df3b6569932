"""Resolve provider-qualified model identifiers."""

from __future__ import annotations

from typing import Mapping

QUALIFIER = "::"


def split_model(target_model: str) -> tuple[str | None, str]:
    """Split ``provider::model`` into its parts; unqualified ids have no provider."""

    if QUALIFIER in target_model:
        provider, _, model = target_model.partition(QUALIFIER)
        return (provider or None, model)
    return (None, target_model)


def resolve_model(
    target_model: str,
    model_to_provider: Mapping[str, str],
    fallback_provider: str | None = None,
) -> tuple[str, str]:
    """Return ``(provider_id, model_id)`` for a target.

    The qualified prefix wins, then the lookup table, then the fallback.
    """

    provider, model = split_model(target_model)
    if provider:
        return (provider, model)
    mapped = model_to_provider.get(target_model)
    if mapped:
        return (mapped, model)
    return (fallback_provider or "", model)


def qualify_model(
    model: str,
    provider_id: str | None,
    model_to_provider: Mapping[str, str] | None = None,
) -> str:
    """Normalize a raw model id into the ``provider::model`` form when possible."""

    raw = model.strip()
    if QUALIFIER in raw:
        return raw
    provider = (provider_id or "").strip()
    if provider:
        return f"{provider}{QUALIFIER}{raw}"
    if model_to_provider and model_to_provider.get(raw):
        return f"{model_to_provider[raw]}{QUALIFIER}{raw}"
    return raw


__all__ = ["QUALIFIER", "qualify_model", "resolve_model", "split_model"]
