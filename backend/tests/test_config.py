import pytest

from core.config import Settings, _enforce_guardrails


def test_defaults_pass_guardrails():
    settings = Settings(_env_file=None)
    _enforce_guardrails(settings)
    assert settings.detection_ruleset == "v2"
    assert settings.detection_interval_minutes == 30
    assert settings.initial_detection_delay_seconds == 5


def test_rejects_unknown_ruleset():
    with pytest.raises(ValueError, match="ruleset"):
        _enforce_guardrails(Settings(_env_file=None, detection_ruleset="v3"))


@pytest.mark.parametrize("minutes", [0, -5, 7, 45])
def test_interval_must_divide_an_hour(minutes):
    with pytest.raises(ValueError, match="divisor of 60"):
        _enforce_guardrails(Settings(_env_file=None, detection_interval_minutes=minutes))


def test_debug_refused_in_production():
    with pytest.raises(ValueError, match="debug"):
        _enforce_guardrails(Settings(_env_file=None, app_env="production", debug=True))


def test_debug_allowed_locally():
    _enforce_guardrails(Settings(_env_file=None, app_env="test", debug=True))
