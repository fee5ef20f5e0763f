"""Tests for configuration."""

from taskquest.config import Settings, settings


def test_settings_default_values():
    """Defaults apply when nothing overrides them."""
    s = Settings(
        database_url="sqlite+aiosqlite:///./data/taskquest.db",
    )
    assert s.database_url.startswith("sqlite+aiosqlite")
    assert isinstance(s.blackjack_min_bet, int)
    assert isinstance(s.blackjack_max_bet_percent, float)
    assert isinstance(s.blackjack_hard_cap, int)


def test_settings_explicit_values():
    s = Settings(
        blackjack_min_bet=5,
        blackjack_max_bet_percent=0.5,
        blackjack_hard_cap=200,
        game_session_timeout_minutes=10,
        game_session_sweep_minutes=2,
    )
    assert s.blackjack_min_bet == 5
    assert s.blackjack_max_bet_percent == 0.5
    assert s.blackjack_hard_cap == 200
    assert s.game_session_timeout_minutes == 10
    assert s.game_session_sweep_minutes == 2


def test_global_settings_are_sane():
    assert settings.blackjack_min_bet > 0
    assert 0 < settings.blackjack_max_bet_percent <= 1
    assert settings.blackjack_hard_cap >= settings.blackjack_min_bet
    assert settings.game_session_sweep_minutes > 0
    assert settings.log_level == settings.log_level.upper()
