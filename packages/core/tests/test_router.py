"""Tests for model role resolution."""

import pytest

from repopanel_core.config import DEFAULT_MODELS
from repopanel_core.errors import NoModelAvailable
from repopanel_core.router import ModelRouter, ModelSpec

MODE = "pipeline_diagnosis"


def _spec(id, role, **kwargs):
    return ModelSpec(id=id, role=role, provider="openai", model=id, **kwargs)


REGISTRY = [
    _spec("lead-a", "lead"),
    _spec("lead-b", "lead"),
    _spec("rev-a", "reviewer"),
    _spec("syn-a", "synthesizer"),
]


class TestDirectResolution:
    def test_first_credentialed_model_wins(self):
        router = ModelRouter(REGISTRY, {"lead-a": "k", "lead-b": "k"})
        assert router.resolve("lead", MODE).model_id == "lead-a"

    def test_skips_uncredentialed(self):
        router = ModelRouter(REGISTRY, {"lead-b": "k"})
        assert router.resolve("lead", MODE).model_id == "lead-b"

    def test_skips_disabled(self):
        registry = [_spec("lead-a", "lead", enabled=False), _spec("lead-b", "lead")]
        router = ModelRouter(registry, {"lead-a": "k", "lead-b": "k"})
        assert router.resolve("lead", MODE).model_id == "lead-b"

    def test_respects_mode_support(self):
        registry = [_spec("lead-a", "lead", modes=("agent_output_critique",)), _spec("lead-b", "lead")]
        router = ModelRouter(registry, {"lead-a": "k", "lead-b": "k"})
        assert router.resolve("lead", MODE).model_id == "lead-b"
        assert router.resolve("lead", "agent_output_critique").model_id == "lead-a"

    def test_handle_carries_key(self):
        router = ModelRouter(REGISTRY, {"lead-a": "secret"})
        handle = router.resolve("lead", MODE)
        assert handle.api_key == "secret"
        assert "secret" not in repr(handle)


class TestFallbacks:
    def test_lead_falls_back_to_reviewer(self):
        router = ModelRouter(REGISTRY, {"rev-a": "k"})
        handle = router.resolve("lead", MODE)
        assert handle.model_id == "rev-a"
        assert handle.role == "lead"
        assert handle.fallback is True

    def test_lead_falls_back_to_any_available(self):
        router = ModelRouter(REGISTRY, {"syn-a": "k"})
        assert router.resolve("lead", MODE).model_id == "syn-a"

    def test_reviewer_falls_back_to_lead(self):
        router = ModelRouter(REGISTRY, {"lead-a": "k"})
        assert router.resolve("reviewer", MODE).model_id == "lead-a"

    def test_synthesizer_falls_back_to_reviewer(self):
        router = ModelRouter(REGISTRY, {"lead-a": "k", "rev-a": "k"})
        assert router.resolve("synthesizer", MODE).model_id == "rev-a"

    def test_specialist_is_served_at_reviewer_tier(self):
        router = ModelRouter(REGISTRY, {"lead-a": "k", "rev-a": "k", "syn-a": "k"})
        handle = router.resolve("specialist", MODE)
        assert handle.model_id == "rev-a"
        assert handle.role == "specialist"

    def test_no_model_raises(self):
        router = ModelRouter(REGISTRY, {})
        with pytest.raises(NoModelAvailable):
            router.resolve("lead", MODE)
        with pytest.raises(NoModelAvailable):
            router.resolve("synthesizer", MODE)

    def test_unknown_role_raises(self):
        router = ModelRouter(REGISTRY, {"lead-a": "k"})
        with pytest.raises(ValueError):
            router.resolve("judge", MODE)


class TestPanel:
    def test_single_model_serves_every_role(self):
        router = ModelRouter(REGISTRY, {"lead-b": "k"})
        panel = router.resolve_panel(MODE)
        assert {h.model_id for h in panel.values()} == {"lead-b"}
        assert set(panel) == {"lead", "reviewer", "synthesizer", "specialist"}

    def test_resolution_is_deterministic(self):
        router = ModelRouter(REGISTRY, {"lead-a": "k", "rev-a": "k"})
        assert router.resolve_panel(MODE) == router.resolve_panel(MODE)

    def test_from_config_with_default_registry(self):
        router = ModelRouter.from_config({"models": DEFAULT_MODELS, "credentials": {"gpt-4o": "k"}})
        panel = router.resolve_panel(MODE)
        assert panel["lead"].model_id == "gpt-4o"
        assert [m.id for m in router.available()] == ["gpt-4o"]
