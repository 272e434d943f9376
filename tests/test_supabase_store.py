from types import SimpleNamespace

import httpx
import pytest
from postgrest.exceptions import APIError

from refund_agent.domain.errors import DatabaseError, NetworkTimeout
from refund_agent.domain.models import Filter
from refund_agent.supabase import SupabaseStore


class FakeQuery:
    """Records the builder chain the store produces."""

    def __init__(self, calls, result=None, error=None):
        self.calls = calls
        self.result = result if result is not None else []
        self.error = error

    def __getattr__(self, name):
        def method(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return method

    @property
    def not_(self):
        self.calls.append(("not_", (), {}))
        return self

    def execute(self):
        if self.error is not None:
            raise self.error
        return SimpleNamespace(data=self.result)


class FakeClient:
    def __init__(self, result=None, error=None, public="https://p.supabase.co/storage/v1/object/public/bucket/x.png?"):
        self.calls = []
        self.query = FakeQuery(self.calls, result, error)
        self.public = public
        self.storage = SimpleNamespace(from_=self._bucket)

    def table(self, name):
        self.calls.append(("table", (name,), {}))
        return self.query

    def _bucket(self, name):
        self.calls.append(("bucket", (name,), {}))
        return SimpleNamespace(get_public_url=lambda filename: self.public)


def test_select_builds_filters_order_and_limit():
    client = FakeClient(result=[{"id": 2}])
    store = SupabaseStore(client, "bucket")
    rows = store.select(
        "refund_requests",
        [Filter("audio_url", "is", None, negate=True), Filter("summary", "is", None), Filter("id", "in", (1, 2))],
        columns="id",
        order=("id", False),
        limit=1,
    )
    assert rows == [{"id": 2}]
    assert client.calls == [
        ("table", ("refund_requests",), {}),
        ("select", ("id",), {}),
        ("not_", (), {}),
        ("is_", ("audio_url", "null"), {}),
        ("is_", ("summary", "null"), {}),
        ("in_", ("id", [1, 2]), {}),
        ("order", ("id",), {"desc": True}),
        ("limit", (1,), {}),
    ]


def test_update_applies_filters_after_patch():
    client = FakeClient()
    SupabaseStore(client, "bucket").update("employees", {"age": 35}, [Filter("id", "eq", 5)])
    assert client.calls[1:] == [("update", ({"age": 35},), {}), ("eq", ("id", 5), {})]


def test_api_errors_become_database_errors():
    err = APIError({"message": "duplicate key value violates unique constraint", "code": "23505"})
    store = SupabaseStore(FakeClient(error=err), "bucket")
    with pytest.raises(DatabaseError, match="duplicate key"):
        store.insert("employees", [{"name": "x"}])


def test_timeouts_become_network_timeouts():
    store = SupabaseStore(FakeClient(error=httpx.ReadTimeout("slow")), "bucket")
    with pytest.raises(NetworkTimeout):
        store.delete("employees", [Filter("id", "eq", 1)])


def test_public_url_gets_storage_fixup():
    client = FakeClient()
    url = SupabaseStore(client, "bucket").public_url("x.png")
    assert url == "https://p.supabase.co/storage/v1/object/public/bucket//x.png"
    assert ("bucket", ("bucket",), {}) in client.calls


def test_in_memory_store_follows_filter_ops(fakes):
    store = fakes.InMemoryStore(
        {"employees": [{"id": 1, "name": "John", "age": 31, "nick": None}, {"id": 2, "name": "ann", "age": 30, "nick": "a"}]}
    )

    def ids(*filters):
        return [r["id"] for r in store.select("employees", list(filters))]

    assert ids(Filter("nick", "is", None, negate=True)) == [2]
    assert ids(Filter("nick", "is", None)) == [1]
    assert ids(Filter("age", "gt", 30)) == [1]
    assert ids(Filter("age", "lte", 30)) == [2]
    assert ids(Filter("name", "ilike", "j%")) == [1]
    assert ids(Filter("name", "like", "j%")) == []
    assert ids(Filter("age", "in", [30, 31])) == [1, 2]
    assert ids(Filter("nick", "eq", "x")) == []
