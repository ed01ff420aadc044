from niya.core.settings import AIFailureMode, Settings


def test_defaults_match_gateway_contract(monkeypatch):
    for name in ("NIYA_AI_FAILURE_MODE", "NIYA_AI_MAX_ATTEMPTS", "NIYA_RATE_LIMIT_MAX_EVENTS"):
        monkeypatch.delenv(name, raising=False)
    s = Settings()
    assert s.ai_failure_mode == AIFailureMode.strict
    assert s.ai_max_attempts == 2
    assert s.ai_timeout_seconds == 25.0
    assert s.ai_retry_delay_seconds == 2.0
    assert s.rate_limit_max_events == 100
    assert s.rate_limit_window_seconds == 60.0
    assert s.history_context_limit == 20
    assert s.upstream_context_limit == 6
    assert s.keepalive_seconds == 30.0


def test_env_aliases_override(monkeypatch):
    monkeypatch.setenv("NIYA_AI_FAILURE_MODE", "fallback")
    monkeypatch.setenv("NIYA_AI_SERVICE_URL", "http://ai.internal:9000")
    monkeypatch.setenv("NIYA_RATE_LIMIT_MAX_EVENTS", "5")
    s = Settings()
    assert s.ai_failure_mode == AIFailureMode.fallback
    assert s.ai_service_url == "http://ai.internal:9000"
    assert s.rate_limit_max_events == 5


def test_log_level_env_is_left_to_setup_logging(monkeypatch):
    monkeypatch.setenv("NIYA_LOG_LEVEL", "DEBUG")
    fields = set(Settings.model_fields)
    assert not fields & {"log_level", "log_level_fallback", "app_name", "debug"}
    assert Settings().app_env
