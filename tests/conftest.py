import copy
import itertools
from typing import Any, Callable, Dict, List, Optional

import pytest

from app.models.session import AccountContext


class _Result:
    def __init__(self, data: Any) -> None:
        self.data = data


def _lookup(row: Dict[str, Any], column: str) -> Any:
    # "kb_sources.org_id" reads the embedded (joined) row
    value: Any = row
    for part in column.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class _FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.limit_n: Optional[int] = None
        self.order_by: Optional[str] = None

    def select(self, *_columns: str) -> "_FakeQuery":
        self.op = "select"
        return self

    def insert(self, payload: Any) -> "_FakeQuery":
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload: Dict[str, Any]) -> "_FakeQuery":
        self.op = "update"
        self.payload = payload
        return self

    def eq(self, column: str, value: Any) -> "_FakeQuery":
        self.filters.append(lambda row: _lookup(row, column) == value)
        return self

    def is_(self, column: str, value: str) -> "_FakeQuery":
        expected = None if value == "null" else value
        self.filters.append(lambda row: _lookup(row, column) == expected)
        return self

    def order(self, column: str, desc: bool = False) -> "_FakeQuery":
        self.order_by = column
        return self

    def limit(self, n: int) -> "_FakeQuery":
        self.limit_n = n
        return self

    def execute(self) -> _Result:
        self.db.calls.append((self.table, self.op))
        if self.table in self.db.failing_tables:
            raise RuntimeError(f"{self.table} unavailable")

        rows = self.db.tables.setdefault(self.table, [])

        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            created = []
            for item in items:
                row = {"id": f"{self.table}-{next(self.db.ids)}", **item}
                rows.append(row)
                created.append(copy.deepcopy(row))
            return _Result(created)

        matched = [row for row in rows if all(f(row) for f in self.filters)]

        if self.op == "update":
            for row in matched:
                row.update(self.payload)
            return _Result([copy.deepcopy(row) for row in matched])

        if self.order_by:
            matched = sorted(matched, key=lambda r: str(r.get(self.order_by) or ""))
        if self.limit_n is not None:
            matched = matched[: self.limit_n]
        return _Result([copy.deepcopy(row) for row in matched])


class _FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]) -> None:
        self.db = db
        self.name = name
        self.params = params

    def execute(self) -> _Result:
        self.db.rpc_calls.append((self.name, self.params))
        handler = self.db.rpc_handlers.get(self.name)
        if handler is None:
            raise RuntimeError(f"function {self.name} does not exist")
        return _Result(handler(self.params))


class FakeSupabase:
    """In-memory stand-in for the supabase-py client (table / rpc builders only)."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.rpc_handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.failing_tables: set = set()
        self.calls: List[tuple] = []
        self.rpc_calls: List[tuple] = []
        self.ids = itertools.count(1)

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> _FakeRpc:
        return _FakeRpc(self, name, params)

    def rows(self, name: str) -> List[Dict[str, Any]]:
        return self.tables.get(name, [])


class FakeGemini:
    """Records prompts; returns a canned embedding and reply."""

    model = "gemini-test"

    def __init__(self, reply: str = "We are open 9am-5pm, Monday to Friday.", embedding: Optional[List[float]] = None) -> None:
        self.reply = reply
        self.embedding = embedding if embedding is not None else [1.0, 0.0, 0.0]
        self.prompts: List[Dict[str, str]] = []
        self.error: Optional[Exception] = None

    async def generate_content(self, system_instruction: str, user_prompt: str) -> str:
        self.prompts.append({"system": system_instruction, "user": user_prompt})
        if self.error is not None:
            raise self.error
        return self.reply

    async def embed_text(self, text: str) -> List[float]:
        return list(self.embedding)


class FakeTransport:
    """Scriptable transport: records calls, fails on demand."""

    def __init__(self, session_id: str, auth_dir: str = "", cache_dir: str = "") -> None:
        self.session_id = session_id
        self.auth_dir = auth_dir
        self.cache_dir = cache_dir
        self.handlers: Dict[Any, List[Callable]] = {}
        self.destroyed = False
        self.initialized = False
        self.sent: List[tuple] = []
        self.fail_initialize: Optional[Exception] = None
        self.fail_destroy: Optional[Exception] = None
        self.fail_send: Optional[Exception] = None
        self.identity = ("628111222333", "Demo Shop")

    @property
    def session_dirs(self) -> List[str]:
        return [d for d in (self.auth_dir, self.cache_dir) if d]

    def on(self, event_type: Any, handler: Callable) -> None:
        self.handlers.setdefault(event_type, []).append(handler)

    async def emit(self, event: Any) -> bool:
        handlers = self.handlers.get(event.type, [])
        if self.destroyed or not handlers:
            return False
        for handler in handlers:
            await handler(event)
        return True

    async def initialize(self) -> None:
        if self.fail_initialize is not None:
            raise self.fail_initialize
        self.initialized = True

    async def destroy(self) -> None:
        self.destroyed = True
        self.handlers.clear()
        if self.fail_destroy is not None:
            raise self.fail_destroy

    async def send_text(self, chat_id: str, text: str) -> Dict[str, Any]:
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append((chat_id, text))
        return {"success": True}

    async def render_pairing_image(self, payload: Any) -> Optional[str]:
        return f"data:image/png;base64,{payload}"

    async def get_identity(self):
        return self.identity


@pytest.fixture
def fake_supabase() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def fake_gemini() -> FakeGemini:
    return FakeGemini()


@pytest.fixture
def account_context() -> AccountContext:
    return AccountContext(organization_id="org-1", account_id="acc-1")
