import pytest

from state_store import RecordStore


@pytest.fixture
def store(tmp_path, monkeypatch):
    db = tmp_path / "state.db"
    monkeypatch.setenv("LEDGER_STATE_DB", str(db))
    s = RecordStore()
    s.init_db()
    return s


@pytest.fixture
def add_txn(store):
    def _add(**overrides):
        row = {
            "user_id": "user-123",
            "amount": -42.5,
            "description": "POS SCREWFIX IRELAND",
            "transaction_date": "2024-06-15",
            "receipt_url": None,
        }
        row.update(overrides)
        return store.table("transactions").insert(row)[0]

    return _add
