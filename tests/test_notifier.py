"""Call pipeline: classification, persistence and dispatch"""
import pytest

from queuejoy.config.settings import Settings
from queuejoy.domain.errors import PersistencePartialError, ServerMisconfiguredError, ValidationError
from queuejoy.domain.models import SeriesStats
from queuejoy.repositories.rtdb_client import InMemoryRealtimeDatabase
from queuejoy.repositories.tenant_store import TenantStore
from queuejoy.repositories.ticket_store import InMemoryTicketStore
from queuejoy.services.notifier import NO_RECIPIENTS_MESSAGE, Notifier, NotifyCounterRequest
from queuejoy.services.telegram_client import EXPLORE_BUTTON_TEXT
from queuejoy.utils.time import iso_from_ms

from .conftest import HOUR_MS, NOW_MS, TelegramRecorder, run

# 2025-01-01T12:05:00Z
CALL_MS = NOW_MS + 12 * HOUR_MS + 5 * 60 * 1000


def _notifier(db, tickets, telegram, settings, now=CALL_MS):
    return Notifier(TenantStore(db, "cafe"), tickets, telegram, settings, clock=lambda: now)


def _request(**body):
    return NotifyCounterRequest.model_validate({"tenant": "cafe", **body})


def _patch(db):
    assert db.count("PATCH") == 1
    path, body = db.patches[0]
    assert path == "tenants/cafe"
    return body


def test_matching_ticket_is_served(db, tickets, recorder, telegram, settings):
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="VANILLA002",
        counterName="Counter 1",
        recipients=[{"chatId": "42", "theirNumber": "VANILLA002", "ticketId": "t1",
                     "createdAt": "2025-01-01T12:00:00Z"}],
    )))

    assert result["ok"] is True
    assert result["sent"] == 1
    assert result["calledSeries"] == "VANILLA"
    row = result["results"][0]
    assert (row["chatId"], row["action"], row["sendRes"]["ok"]) == ("42", "served", True)

    [message] = recorder.messages()
    assert message["chat_id"] == "42"
    assert "VANILLA002" in message["text"] and "Counter 1" in message["text"]
    assert message["reply_markup"]["inline_keyboard"][0][0]["text"] == EXPLORE_BUTTON_TEXT

    body = _patch(db)
    assert body["/queue/t1/status"] == "served"
    assert body["/queue/t1/servedAt"] == CALL_MS
    assert body["/queue/t1/serviceMs"] == 5 * 60 * 1000
    assert body["/analytics/servedCount"] == 1
    events = [k for k in body if k.startswith("/analytics/serviceEvents/")]
    assert len(events) == 1
    assert body[events[0]]["series"] == "VANILLA"
    assert body[events[0]]["counter"] == "Counter 1"

    assert result["statsSnapshot"]["totalServed"] == 1
    assert result["persistence"]["patched"] is True


def test_called_number_in_later_series_gets_reminder(db, tickets, recorder, telegram, settings):
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="VANILLA001",
        recipients=[{"chatId": "43", "theirNumber": "VANILLA003", "ticketId": "t3"}],
    )))

    assert result["results"][0]["action"] == "reminder"
    [message] = recorder.messages()
    for fragment in ("REMINDER", "VANILLA001", "VANILLA003"):
        assert fragment in message["text"]
    body = _patch(db)
    assert body["/queue/t3/lastReminderAt"] == CALL_MS
    assert "/queue/t3/status" not in body
    assert "/analytics/servedCount" not in body


def test_other_series_is_skipped_without_writes(db, tickets, recorder, telegram, settings):
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="A001",
        recipients=[{"theirNumber": "B001"}],
    )))

    assert result["sent"] == 0
    assert result["results"][0]["action"] == "skipped-ahead"
    assert recorder.calls == []
    assert db.count("PATCH") == 0
    assert tickets.state == {}


def test_earlier_number_is_skipped(db, tickets, recorder, telegram, settings):
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="A005",
        recipients=[{"chatId": "1", "theirNumber": "A002", "ticketId": "t2"}],
    )))
    assert result["results"][0]["action"] == "skipped-ahead"
    assert recorder.calls == []


def test_stale_unmatched_ticket_is_cancelled(db, tickets, recorder, telegram, settings):
    created = iso_from_ms(CALL_MS - 25 * HOUR_MS)
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="VANILLA002",
        recipients=[{"chatId": "44", "theirNumber": "VANILLA005", "ticketId": "t5", "createdAt": created}],
    )))

    assert result["results"][0]["action"] == "cancelled-stale"
    assert result["sent"] == 0
    assert recorder.calls == []
    assert _patch(db) == {"/queue/t5/status": "cancelled"}


def test_ticket_exactly_one_day_old_still_gets_reminder(db, tickets, recorder, telegram, settings):
    created = iso_from_ms(CALL_MS - 24 * HOUR_MS)
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="VANILLA002",
        recipients=[{"chatId": "44", "theirNumber": "VANILLA005", "ticketId": "t5", "createdAt": created}],
    )))
    assert result["results"][0]["action"] == "reminder"


def test_served_ticket_is_never_notified_twice(db, tickets, recorder, telegram, settings):
    request = _request(
        calledFull="A001",
        recipients=[{"chatId": "42", "theirNumber": "A001", "ticketId": "t1"}],
    )
    run(_notifier(db, tickets, telegram, settings).notify(request))
    again = run(_notifier(db, tickets, telegram, settings).notify(request))

    assert again["results"][0]["action"] == "skipped-already-served"
    assert again["sent"] == 0
    assert len(recorder.messages()) == 1
    assert db.count("PATCH") == 1


def test_duplicate_recipients_are_processed_once(db, tickets, recorder, telegram, settings):
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="A001",
        recipients=[
            {"chatId": "42", "theirNumber": " a001 ", "ticketId": "t1"},
            {"chatId": "42", "theirNumber": "A001", "ticketId": "t1"},
        ],
    )))
    assert len(result["results"]) == 1
    assert len(recorder.messages()) == 1


def test_stats_accumulate_across_served_tickets():
    db = InMemoryRealtimeDatabase({"tenants": {"cafe": {"analytics": {"servedCount": 4}}}})
    tickets = InMemoryTicketStore()
    run(tickets.put_series_stats("cafe", "A", SeriesStats(
        total_served=2, total_service_ms=1000, min_service_ms=400, max_service_ms=600,
        moving_avg_last_n=[400, 600],
    )))

    recorder = TelegramRecorder()
    settings = Settings(bot_token="TEST", broadcast_pause_ms=0)
    result = run(Notifier(TenantStore(db, "cafe"), tickets, recorder.client(), settings, clock=lambda: CALL_MS).notify(
        _request(
            calledFull="A001",
            recipients=[
                {"chatId": "1", "theirNumber": "A001", "ticketId": "t1", "createdAt": CALL_MS - 100},
                {"chatId": "2", "theirNumber": "A001", "ticketId": "t2", "createdAt": CALL_MS - 900},
            ],
        )
    ))

    stats = result["statsSnapshot"]
    assert stats["totalServed"] == 4
    assert stats["totalServiceMs"] == 2000
    assert stats["minServiceMs"] == 100
    assert stats["maxServiceMs"] == 900
    body = _patch(db)
    assert body["/analytics/servedCount"] == 6
    assert len([k for k in body if "/serviceEvents/" in k]) == 2
    saved = run(tickets.load_series_stats("cafe", "A"))
    assert saved.total_served == 4


def test_linked_served_ticket_has_numbers_scrubbed(db, tickets, telegram, settings):
    run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="A001",
        recipients=[{"chatId": "42", "theirNumber": "A001", "ticketId": "t1"}],
    )))
    body = _patch(db)
    assert body["/queue/t1/number"] is None
    assert body["/queue/t1/queueId"] is None


def test_scrubbing_follows_tenant_privacy_setting(tickets, telegram, settings):
    db = InMemoryRealtimeDatabase({"tenants": {"cafe": {"settings": {"privacy": {"scrubLinkedNumbers": False}}}}})
    run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="A001",
        recipients=[{"chatId": "42", "theirNumber": "A001", "ticketId": "t1"}],
    )))
    assert "/queue/t1/number" not in _patch(db)


def test_recipients_are_seeded_from_the_series_index(tickets, recorder, telegram, settings):
    db = InMemoryRealtimeDatabase({"tenants": {"cafe": {"queue": {
        "-a": {"ticketNumber": "A002", "chatId": "1", "series": "A", "status": "waiting", "timestamp": CALL_MS - 1000},
        "-b": {"ticketNumber": "A005", "chatId": "2", "series": "A", "status": "waiting"},
        "-c": {"ticketNumber": "B001", "chatId": "3", "series": "B", "status": "waiting"},
        "-d": {"ticketNumber": "A003", "chatId": "4", "series": "A", "status": "served"},
    }}}})
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(calledFull="A002")))

    actions = {r["ticketKey"]: r["action"] for r in result["results"]}
    assert actions == {"-a": "served", "-b": "reminder"}
    assert db.count("QUERY") == 1
    assert ("GET", "tenants/cafe/queue") not in db.calls
    assert _patch(db)["/queue/-a/serviceMs"] == 1000


def test_queue_is_read_once_when_index_finds_nothing(tickets, telegram, settings):
    db = InMemoryRealtimeDatabase({"tenants": {"cafe": {"queue": {
        "-a": {"ticketNumber": "A002", "chatId": "1"},
    }}}})
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(calledFull="A002")))
    assert result["results"][0]["action"] == "served"
    assert db.calls.count(("GET", "tenants/cafe/queue")) == 1


def test_no_recipients(db, tickets, recorder, telegram, settings):
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(calledFull="A001")))
    assert result["sent"] == 0
    assert result["message"] == NO_RECIPIENTS_MESSAGE
    assert recorder.calls == []


def test_recipient_without_chat_is_recorded_but_not_sent(db, tickets, recorder, telegram, settings):
    result = run(_notifier(db, tickets, telegram, settings).notify(_request(
        calledFull="A001",
        recipients=[{"theirNumber": "A001", "ticketId": "t1"}],
    )))
    assert result["results"][0]["sendRes"] == {"ok": False, "reason": "no-chatId"}
    assert result["sent"] == 0
    assert _patch(db)["/queue/t1/status"] == "served"


def test_called_number_is_required(db, tickets, telegram, settings):
    with pytest.raises(ValidationError):
        run(_notifier(db, tickets, telegram, settings).notify(_request(calledFull="  ")))


def test_missing_bot_token(db, tickets, recorder, settings):
    with pytest.raises(ServerMisconfiguredError):
        run(_notifier(db, tickets, recorder.client(bot_token=""), settings).notify(_request(calledFull="A001")))


def test_request_bot_token_overrides_default(db, tickets, recorder, settings):
    run(_notifier(db, tickets, recorder.client(bot_token=""), settings).notify(_request(
        calledFull="A001",
        botToken="OTHER",
        recipients=[{"chatId": "1", "theirNumber": "A001"}],
    )))
    assert "/botOTHER/sendMessage" in recorder.calls[0]["url"]


def test_failed_patch_reports_partial_persistence(db, tickets, recorder, telegram, settings):
    db.fail_on = {"PATCH"}
    with pytest.raises(PersistencePartialError) as exc:
        run(_notifier(db, tickets, telegram, settings).notify(_request(
            calledFull="A001",
            recipients=[{"chatId": "42", "theirNumber": "A001", "ticketId": "t1"}],
        )))
    assert exc.value.details["results"][0]["action"] == "served"
    assert exc.value.details["ok"] is False
    assert len(recorder.messages()) == 1
