import pytest

from stockbook.errors import ValidationError
from stockbook.services import activity


def test_log_activity_records_actor_and_metadata(conn):
    with conn:
        first = activity.log_activity(conn, "create", "product", 7, "Created product Chair", {"qty": 3})
        second = activity.log_activity(
            conn, "delete", "customer", None, "Deleted customer Jo", actor={"id": 2, "username": "kim"}
        )

    rows = activity.recent_activity(conn)
    assert [r["id"] for r in rows] == [second, first]
    assert rows[1]["username"] == "system"
    assert rows[1]["user_id"] is None
    assert rows[1]["entity_id"] == "7"
    assert rows[1]["metadata"] == {"qty": 3}
    assert rows[0]["username"] == "kim"
    assert rows[0]["metadata"] == {}


def test_log_activity_rejects_unknown_action(conn):
    with pytest.raises(ValidationError):
        activity.log_activity(conn, "archive", "product", 1, "nope")


def test_activity_cursor_helpers(conn):
    assert activity.latest_activity_id(conn) == 0
    with conn:
        ids = [activity.log_activity(conn, "update", "product", i, f"entry {i}") for i in range(4)]

    assert activity.latest_activity_id(conn) == ids[-1]
    assert [r["id"] for r in activity.activity_since(conn, ids[1])] == ids[2:]
    assert [r["id"] for r in activity.recent_activity(conn, after_id=ids[1])] == list(reversed(ids[2:]))
    assert len(activity.recent_activity(conn, limit=2)) == 2
    assert len(activity.activity_today(conn)) == 4


def test_diff_changes():
    before = {"name": "Chair", "total_stock": 4, "notes": None}
    after = {"name": "Chair", "total_stock": 6, "notes": "restocked"}
    assert activity.diff_changes(before, after) == {
        "total_stock": {"from": 4, "to": 6},
        "notes": {"from": None, "to": "restocked"},
    }
