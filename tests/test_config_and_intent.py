from datetime import timedelta

import pytest

from medmatch.config import Settings
from medmatch.intent import RequestReplyIntent, parse_request_reply_intent


def test_settings_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("MEDMATCH_STALENESS_THRESHOLD_MINUTES", "2")
    monkeypatch.setenv("MEDMATCH_ESCALATION_INTERVAL_SECONDS", "15")
    monkeypatch.setenv("MEDMATCH_SERVICE_STALENESS_MINUTES", '{"svc-ecg": 0.5}')

    settings = Settings(_env_file=None)

    assert settings.escalation_interval_seconds == 15
    assert settings.staleness_for("svc-gp") == timedelta(minutes=2)
    assert settings.staleness_for("svc-ecg") == timedelta(seconds=30)
    assert settings.min_staleness == timedelta(seconds=30)


def test_default_staleness_is_a_day() -> None:
    settings = Settings(_env_file=None)
    assert settings.staleness_for("anything") == timedelta(hours=24)
    assert settings.min_staleness == timedelta(hours=24)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, expected",
    [
        ("yes", RequestReplyIntent.ACCEPT),
        ("YES!", RequestReplyIntent.ACCEPT),
        ("ok I'll take it", RequestReplyIntent.ACCEPT),
        ("no", RequestReplyIntent.DECLINE),
        ("Sorry, can't make it", RequestReplyIntent.DECLINE),
        ("busy until 6", RequestReplyIntent.DECLINE),
        ("where is it?", RequestReplyIntent.UNKNOWN),
        ("", RequestReplyIntent.UNKNOWN),
    ],
)
async def test_parse_reply_intent(body: str, expected: RequestReplyIntent) -> None:
    assert await parse_request_reply_intent(body) == expected
