"""Model Role Router.

Maps a (role, mode) pair to a concrete, credentialed model. The router is
pure: the registry and the credential capability map are injected at
construction, so resolution never touches the environment and the same
inputs always resolve to the same handle.

Fallback chain:
    lead        → direct → reviewer's model → any available model
    reviewer    → direct → lead's resolution
    synthesizer → direct → reviewer's resolution
    specialist  → direct → reviewer's resolution
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from repopanel_core.errors import NoModelAvailable
from repopanel_core.models import LEAD, MODES, REVIEWER, SPECIALIST, SYNTHESIZER

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSpec:
    """One entry of the model registry."""

    id: str
    role: str
    provider: str
    model: str
    api_key_env: str | None = None
    label: str = ""
    enabled: bool = True
    cost_tier: str = "medium"
    modes: tuple[str, ...] = MODES

    @classmethod
    def from_dict(cls, entry: dict) -> ModelSpec:
        return cls(
            id=entry["id"],
            role=entry["role"],
            provider=entry["provider"],
            model=entry.get("model", entry["id"]),
            api_key_env=entry.get("api_key_env"),
            label=entry.get("label") or entry["id"],
            enabled=bool(entry.get("enabled", True)),
            cost_tier=entry.get("cost_tier", "medium"),
            modes=tuple(entry.get("modes") or MODES),
        )


@dataclass(frozen=True)
class ModelHandle:
    """A resolved model ready to invoke.

    ``role`` is the role the handle was requested for, which differs from
    ``spec.role`` when a fallback was taken.
    """

    spec: ModelSpec
    role: str
    api_key: str = field(repr=False, default="")

    @property
    def model_id(self) -> str:
        return self.spec.id

    @property
    def fallback(self) -> bool:
        return self.spec.role != self.role


class ModelRouter:
    def __init__(self, models: list[ModelSpec], credentials: dict[str, str]):
        self._models = list(models)
        self._credentials = dict(credentials)

    @classmethod
    def from_config(cls, config: dict) -> ModelRouter:
        models = [ModelSpec.from_dict(m) for m in config.get("models", [])]
        return cls(models, config.get("credentials", {}))

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def resolve(self, role: str, mode: str) -> ModelHandle:
        """Return the handle serving ``role`` in ``mode`` or raise NoModelAvailable."""
        if role == LEAD:
            handle = self._direct(LEAD, mode) or self._direct(REVIEWER, mode) or self._any_available(mode)
            if handle is None:
                raise NoModelAvailable(role, mode)
            return self._as_role(handle, LEAD)
        if role == REVIEWER:
            return self._as_role(self._direct(REVIEWER, mode) or self.resolve(LEAD, mode), REVIEWER)
        if role in (SYNTHESIZER, SPECIALIST):
            return self._as_role(self._direct(role, mode) or self.resolve(REVIEWER, mode), role)
        raise ValueError(f"Unknown role {role!r}")

    def resolve_panel(self, mode: str) -> dict[str, ModelHandle]:
        """Resolve all four roles for a run. Raises only if the Lead is unresolvable."""
        panel = {role: self.resolve(role, mode) for role in (LEAD, REVIEWER, SYNTHESIZER, SPECIALIST)}
        for role, handle in panel.items():
            if handle.fallback:
                logger.info("Role %s served by fallback model %s", role, handle.model_id)
        return panel

    def available(self, mode: str | None = None) -> list[ModelSpec]:
        return [m for m in self._models if self._usable(m, mode)]

    # ------------------------------------------------------------------ #
    # Resolution helpers                                                   #
    # ------------------------------------------------------------------ #

    def _usable(self, spec: ModelSpec, mode: str | None) -> bool:
        if not spec.enabled or spec.id not in self._credentials:
            return False
        return mode is None or mode in spec.modes

    def _direct(self, role: str, mode: str) -> ModelHandle | None:
        for spec in self._models:
            if spec.role == role and self._usable(spec, mode):
                return ModelHandle(spec=spec, role=role, api_key=self._credentials[spec.id])
        return None

    def _any_available(self, mode: str) -> ModelHandle | None:
        for spec in self._models:
            if self._usable(spec, mode):
                return ModelHandle(spec=spec, role=spec.role, api_key=self._credentials[spec.id])
        return None

    @staticmethod
    def _as_role(handle: ModelHandle, role: str) -> ModelHandle:
        if handle.role == role:
            return handle
        return ModelHandle(spec=handle.spec, role=role, api_key=handle.api_key)
