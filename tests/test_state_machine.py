"""
Tests for search stage tracking and settings
"""
from loca_api.core.config import Settings
from loca_api.core.state_machine import SearchStage, SearchState


class TestSearchState:

    def test_transitions_are_logged(self):
        state = SearchState()
        assert state.stage == SearchStage.IDLE
        assert state.get_latest_event() is None

        state.log_event(SearchStage.GEOCODING, "Lisbon")
        state.log_event(SearchStage.SCORING)

        assert state.stage == SearchStage.SCORING
        assert [e["stage"] for e in state.event_log] == ["GEOCODING", "SCORING"]
        assert state.get_latest_event()["detail"] == ""
        assert state.started_at is not None

    def test_fail_records_stage_and_message(self):
        state = SearchState()
        state.log_event(SearchStage.CANDIDATE_SEARCH)
        state.fail("Place search failed (HTTP 403)")

        assert state.is_terminal()
        assert state.stage == SearchStage.ERROR
        assert state.failed_stage == SearchStage.CANDIDATE_SEARCH
        assert state.error_message == "Place search failed (HTTP 403)"

    def test_terminal_state_ignores_transitions(self):
        state = SearchState()
        state.log_event(SearchStage.DONE)
        state.log_event(SearchStage.ENRICHMENT)
        state.fail("late failure")

        assert state.stage == SearchStage.DONE
        assert state.error_message is None

    def test_reset(self):
        state = SearchState()
        state.log_event(SearchStage.GEOCODING)
        state.fail("boom")
        state.reset()

        assert state.stage == SearchStage.IDLE
        assert state.error_message is None
        assert state.event_log == []


class TestSettings:

    def test_defaults(self, monkeypatch):
        for name in ("RATE_LIMIT_MAX_SEARCHES", "RATE_LIMIT_WINDOW_HOURS", "RESULTS_CACHE_MAX_ENTRIES"):
            monkeypatch.delenv(name, raising=False)
        config = Settings(_env_file=None)
        assert config.rate_limit_max_searches == 10
        assert config.rate_limit_window_hours == 12
        assert config.image_analysis_timeout_s == 3.0
        assert config.results_cache_max_entries == 1

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_MAX_SEARCHES", "3")
        monkeypatch.setenv("RATE_LIMIT_WINDOW_HOURS", "0.5")
        monkeypatch.setenv("INTERACTION_HISTORY_URL", "https://loca.test/api/user")
        config = Settings(_env_file=None)
        assert config.rate_limit_max_searches == 3
        assert config.rate_limit_window_hours == 0.5
        assert config.interaction_history_url == "https://loca.test/api/user"
