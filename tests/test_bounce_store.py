import pytest

from src.domain.bounce_store import SupabaseBounceStore
from src.models.webhooks import BounceEvent
from src.observability import metrics_snapshot, reset_metrics


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.insert_payload = None

    def insert(self, payload: dict):
        self.insert_payload = payload
        return self

    def execute(self):
        if self.db.fail_with is not None:
            raise self.db.fail_with
        table = self.db.tables.setdefault(self.table_name, [])
        for row in table:
            if (
                row.get("email") == self.insert_payload.get("email")
                and row.get("notification_id") == self.insert_payload.get("notification_id")
            ):
                raise Exception("duplicate key value violates unique constraint \"email_bounces_email_notification_id\"")
        row = dict(self.insert_payload)
        row.setdefault("id", f"{self.table_name}-{len(table)+1}")
        table.append(row)
        return FakeResponse([row])


class FakeSupabase:
    def __init__(self):
        self.tables = {"email_bounces": []}
        self.fail_with = None

    def table(self, table_name: str):
        return FakeQuery(table_name, self)


def _event(**overrides) -> BounceEvent:
    fields = {
        "email": "a@x.com",
        "bounce_type": "hard",
        "bounce_sub_type": "General",
        "diagnostic_code": "smtp; 550",
        "notification_id": "feedback-1",
        "provider": "ses",
    }
    fields.update(overrides)
    return BounceEvent(**fields)


def test_record_bounce_inserts_row():
    reset_metrics()
    db = FakeSupabase()
    store = SupabaseBounceStore(db)

    store.record_bounce(_event())

    rows = db.tables["email_bounces"]
    assert len(rows) == 1
    assert rows[0]["email"] == "a@x.com"
    assert rows[0]["bounce_type"] == "hard"
    assert rows[0]["bounce_sub_type"] == "General"
    assert rows[0]["diagnostic_code"] == "smtp; 550"
    assert rows[0]["notification_id"] == "feedback-1"
    assert rows[0]["provider"] == "ses"
    assert rows[0]["recorded_at"]
    assert metrics_snapshot()["webhook.bounces.recorded|bounce_type=hard,provider_slug=ses"] == 1


def test_record_bounce_uses_configured_table():
    db = FakeSupabase()
    store = SupabaseBounceStore(db, table="bounce_archive")

    store.record_bounce(_event())

    assert len(db.tables["bounce_archive"]) == 1
    assert db.tables["email_bounces"] == []


def test_redelivered_bounce_is_ignored_as_duplicate():
    reset_metrics()
    db = FakeSupabase()
    store = SupabaseBounceStore(db)

    store.record_bounce(_event())
    store.record_bounce(_event())
    store.record_bounce(_event(email="b@x.com"))

    assert [row["email"] for row in db.tables["email_bounces"]] == ["a@x.com", "b@x.com"]
    assert metrics_snapshot()["webhook.bounces.duplicate|provider_slug=ses"] == 1


def test_other_persistence_errors_propagate():
    db = FakeSupabase()
    db.fail_with = RuntimeError("connection reset by peer")
    store = SupabaseBounceStore(db)

    with pytest.raises(RuntimeError, match="connection reset"):
        store.record_bounce(_event())


def test_redacted_logging_masks_recipient(caplog):
    db = FakeSupabase()
    store = SupabaseBounceStore(db, redact_emails=True)

    with caplog.at_level("INFO", logger="access_ai"):
        store.record_bounce(_event(email="alice@example.com"))

    assert "alice@example.com" not in caplog.text
    assert "a***@example.com" in caplog.text


def test_client_factory_is_called_on_first_write_only():
    db = FakeSupabase()
    calls = []

    def factory():
        calls.append(1)
        return db

    store = SupabaseBounceStore(client_factory=factory)
    assert calls == []

    store.record_bounce(_event())
    store.record_bounce(_event(email="b@x.com"))

    assert calls == [1]
    assert len(db.tables["email_bounces"]) == 2


def test_client_factory_failure_propagates_from_record_bounce():
    def factory():
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be configured to record bounces")

    store = SupabaseBounceStore(client_factory=factory)

    with pytest.raises(RuntimeError, match="must be configured"):
        store.record_bounce(_event())
