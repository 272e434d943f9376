"""Natural language -> database operation.

The chat model is prompted with few-shot examples and answers with a
supabase-js style chain such as

    supabase.from('employees').select('*').gt('age', 30).limit(5)

That text is never executed. It is tokenized and parsed by a small strict
grammar into a `QueryPlan`, which is then run through the store. Anything the
grammar does not know is rejected with `QueryRejected`.
"""

from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..domain.errors import QueryRejected
from ..domain.models import COLLECTIONS, EMPLOYEES, Filter, Operation, QueryPlan, QueryResult, table_columns
from ..logging import get_logger
from .backoff import with_retry
from .llm import ChatModel

LOG = get_logger("orchestrator-query")

SYSTEM_PROMPT = """You are a database query generator for a Supabase (Postgres) project.
The database has two tables:

1. "employees" table with columns:
- id (integer, primary key)
- name (text)
- age (numeric)
- salary (numeric)

2. "refund_requests" table with columns:
- id (integer, primary key)
- name (text)
- amount (numeric)
- image_url (text)
- audio_url (text)
- summary (text)

Detect which table the user is referring to. If the query mentions "refund", "request" or
similar terms, use "refund_requests". If it mentions "employee", "staff", "worker" or similar
terms, use "employees". If the table isn't clear, default to "employees".

For update operations pay special attention to the row ID. If the user names a row number or
ID, use that exact ID in the update condition.

Examples:

Natural Language Query: "Get all employees"
Supabase Query: supabase.from('employees').select('*')

Natural Language Query: "Show employee with ID 5"
Supabase Query: supabase.from('employees').select('*').eq('id', 5)

Natural Language Query: "List employees who earn 1000"
Supabase Query: supabase.from('employees').select('*').eq('salary', 1000)

Natural Language Query: "Who has the highest salary?"
Supabase Query: supabase.from('employees').select('*').order('salary', { ascending: false }).limit(1)

Natural Language Query: "Employees over 30"
Supabase Query: supabase.from('employees').select('*').gt('age', 30)

Natural Language Query: "Names starting with J"
Supabase Query: supabase.from('employees').select('*').ilike('name', 'J%')

Natural Language Query: "Get all refund requests"
Supabase Query: supabase.from('refund_requests').select('*')

Natural Language Query: "Show refund request with ID 3"
Supabase Query: supabase.from('refund_requests').select('*').eq('id', 3)

Natural Language Query: "List refund requests with amount over 100"
Supabase Query: supabase.from('refund_requests').select('*').gt('amount', 100)

Natural Language Query: "Get refund requests ordered by amount"
Supabase Query: supabase.from('refund_requests').select('*').order('amount', { ascending: false })

Natural Language Query: "Refund requests with summaries"
Supabase Query: supabase.from('refund_requests').select('*').not('summary', 'is', null)

Natural Language Query: "Add a new employee named John Doe, age 30, salary 50000"
Supabase Query: supabase.from('employees').insert([{ name: 'John Doe', age: 30, salary: 50000 }])

Natural Language Query: "Create a new refund request for Alice Johnson with amount 75.50"
Supabase Query: supabase.from('refund_requests').insert([{ name: 'Alice Johnson', amount: 75.50 }])

Natural Language Query: "Update employee with ID 5 to have age 35"
Supabase Query: supabase.from('employees').update({ age: 35 }).eq('id', 5)

Natural Language Query: "Change John Doe's salary to 60000"
Supabase Query: supabase.from('employees').update({ salary: 60000 }).eq('name', 'John Doe')

Natural Language Query: "Update row 11, make John's age 100"
Supabase Query: supabase.from('employees').update({ age: 100 }).eq('id', 11)

Natural Language Query: "Update refund request with ID 3 to have amount 125.75"
Supabase Query: supabase.from('refund_requests').update({ amount: 125.75 }).eq('id', 3)

Natural Language Query: "Delete employee with ID 5"
Supabase Query: supabase.from('employees').delete().eq('id', 5)

Natural Language Query: "Remove refund request with ID 7"
Supabase Query: supabase.from('refund_requests').delete().eq('id', 7)

Only return the single query expression, nothing else.
No markdown, no comments, no explanation.
"""

# ---------- static inspection ----------
_TABLE_RE = re.compile(r"from\(\s*['\"]([^'\"]+)['\"]\s*\)")


def inspect_generated(text: str) -> Tuple[str, str]:
    """(operation, table) read off the raw generated text without parsing it."""
    m = _TABLE_RE.search(text or "")
    table = m.group(1) if m else EMPLOYEES
    if ".insert(" in text:
        op = Operation.INSERT.value
    elif ".update(" in text:
        op = Operation.UPDATE.value
    elif ".delete(" in text:
        op = Operation.DELETE.value
    else:
        op = Operation.SELECT.value
    return op, table


# ---------- tokenizer ----------
@dataclass
class Token:
    kind: str  # ident | string | number | punct | end
    value: Any
    pos: int


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<ident>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<punct>[.(){}\[\],:;])
    """,
    re.VERBOSE,
)
_ESCAPE_RE = re.compile(r"\\(.)")


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m:
            raise QueryRejected(f"Unexpected character {text[pos]!r} at position {pos}")
        kind = m.lastgroup
        raw = m.group(0)
        if kind == "number":
            tokens.append(Token("number", float(raw) if "." in raw else int(raw), pos))
        elif kind == "string":
            tokens.append(Token("string", _ESCAPE_RE.sub(r"\1", raw[1:-1]), pos))
        elif kind in ("ident", "punct"):
            tokens.append(Token(kind, raw, pos))
        pos = m.end()
    tokens.append(Token("end", None, pos))
    return tokens


# ---------- parser ----------
class _Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.i = 0

    def peek(self) -> Token:
        return self.tokens[self.i]

    def next(self) -> Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def expect(self, kind: str, value: Any = None) -> Token:
        tok = self.next()
        if tok.kind != kind or (value is not None and tok.value != value):
            want = value if value is not None else kind
            raise QueryRejected(f"Expected {want!r} at position {tok.pos}, got {tok.value!r}")
        return tok

    def accept(self, kind: str, value: Any = None) -> bool:
        tok = self.peek()
        if tok.kind == kind and (value is None or tok.value == value):
            self.i += 1
            return True
        return False

    def chain(self) -> Tuple[str, List[Tuple[str, List[Any]]]]:
        self.accept("ident", "await")
        self.expect("ident", "supabase")
        self.expect("punct", ".")
        self.expect("ident", "from")
        self.expect("punct", "(")
        table = self.expect("string").value
        self.expect("punct", ")")
        calls: List[Tuple[str, List[Any]]] = []
        while self.accept("punct", "."):
            name = self.expect("ident").value
            calls.append((name, self.args()))
        self.accept("punct", ";")
        self.expect("end")
        return table, calls

    def args(self) -> List[Any]:
        self.expect("punct", "(")
        out: List[Any] = []
        if self.accept("punct", ")"):
            return out
        while True:
            out.append(self.value())
            if self.accept("punct", ")"):
                return out
            self.expect("punct", ",")

    def value(self) -> Any:
        tok = self.next()
        if tok.kind in ("string", "number"):
            return tok.value
        if tok.kind == "ident":
            literals = {"true": True, "false": False, "null": None}
            if tok.value in literals:
                return literals[tok.value]
            raise QueryRejected(f"Bare identifier {tok.value!r} at position {tok.pos}")
        if tok.kind == "punct" and tok.value == "{":
            return self.obj()
        if tok.kind == "punct" and tok.value == "[":
            return self.array()
        raise QueryRejected(f"Unexpected {tok.value!r} at position {tok.pos}")

    def obj(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        while not self.accept("punct", "}"):
            key = self.next()
            if key.kind not in ("ident", "string"):
                raise QueryRejected(f"Bad object key at position {key.pos}")
            self.expect("punct", ":")
            out[str(key.value)] = self.value()
            if not self.accept("punct", ","):
                self.expect("punct", "}")
                break
        return out

    def array(self) -> List[Any]:
        out: List[Any] = []
        while not self.accept("punct", "]"):
            out.append(self.value())
            if not self.accept("punct", ","):
                self.expect("punct", "]")
                break
        return out


_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_PREFIX_RE = re.compile(r"^\s*supabase query:\s*", re.IGNORECASE)
_COLUMN_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_COMPARISONS = ("eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike")


def clean_generated(text: str) -> str:
    s = (text or "").strip()
    s = _FENCE_RE.sub("", s).strip()
    return _PREFIX_RE.sub("", s).strip()


def _column(value: Any, method: str, allowed: Optional[Sequence[str]] = None) -> str:
    if not isinstance(value, str) or not _COLUMN_RE.match(value):
        raise QueryRejected(f"{method}(): invalid column name {value!r}")
    if allowed is not None and value not in allowed:
        raise QueryRejected(f"{method}(): unknown column {value!r}")
    return value


def _scalar_row(row: Any, method: str, allowed: Sequence[str]) -> Dict[str, Any]:
    if not isinstance(row, dict) or not row:
        raise QueryRejected(f"{method}(): expected a non-empty object")
    for k, v in row.items():
        _column(k, method, allowed)
        if isinstance(v, (dict, list)):
            raise QueryRejected(f"{method}(): nested value for column {k!r}")
    return row


def _filter(method: str, args: List[Any], allowed: Sequence[str]) -> Filter:
    if method in _COMPARISONS:
        if len(args) != 2:
            raise QueryRejected(f"{method}() takes a column and a value")
        return Filter(_column(args[0], method, allowed), method, args[1])
    if method == "is":
        if len(args) != 2 or args[1] not in (None, True, False):
            raise QueryRejected("is() takes a column and null/true/false")
        return Filter(_column(args[0], method, allowed), "is", args[1])
    if method == "in":
        if len(args) != 2 or not isinstance(args[1], list):
            raise QueryRejected("in() takes a column and an array")
        return Filter(_column(args[0], method, allowed), "in", list(args[1]))
    if method == "not":
        if len(args) != 3 or not isinstance(args[1], str):
            raise QueryRejected("not() takes a column, an operator and a value")
        inner = _filter(args[1], [args[0], args[2]], allowed)
        return Filter(inner.column, inner.op, inner.value, negate=True)
    raise QueryRejected(f"Unsupported method: {method}()")


def parse_query(text: str) -> QueryPlan:
    """Parse generated query text into a `QueryPlan` or raise `QueryRejected`."""
    cleaned = clean_generated(text)
    if not cleaned:
        raise QueryRejected("Empty query text")
    table, calls = _Parser(tokenize(cleaned)).chain()
    if table not in COLLECTIONS:
        raise QueryRejected(f"Unknown table: {table!r}")
    allowed = table_columns(table)
    if not calls:
        raise QueryRejected("Missing operation")

    method, args = calls[0]
    plan: QueryPlan
    if method == "select":
        columns = args[0] if args else "*"
        if not isinstance(columns, str):
            raise QueryRejected("select() takes a column list string")
        columns = columns.strip() or "*"
        if columns != "*":
            for c in columns.split(","):
                _column(c.strip(), "select", allowed)
        plan = QueryPlan(Operation.SELECT, table, columns=columns)
    elif method == "insert":
        if len(args) != 1:
            raise QueryRejected("insert() takes one object or array of objects")
        rows = args[0] if isinstance(args[0], list) else [args[0]]
        if not rows:
            raise QueryRejected("insert(): no rows")
        plan = QueryPlan(Operation.INSERT, table, payload=[_scalar_row(r, "insert", allowed) for r in rows])
    elif method == "update":
        if len(args) != 1:
            raise QueryRejected("update() takes one object")
        plan = QueryPlan(Operation.UPDATE, table, payload=_scalar_row(args[0], "update", allowed))
    elif method == "delete":
        if args:
            raise QueryRejected("delete() takes no arguments")
        plan = QueryPlan(Operation.DELETE, table)
    else:
        raise QueryRejected(f"Query must start with select/insert/update/delete, got {method}()")

    for method, args in calls[1:]:
        if method == "order":
            if plan.operation is not Operation.SELECT or not args or len(args) > 2:
                raise QueryRejected("order() is only valid on select with a column")
            opts = args[1] if len(args) == 2 else {}
            if not isinstance(opts, dict) or set(opts) - {"ascending"}:
                raise QueryRejected("order() options must be { ascending: bool }")
            plan.order = (_column(args[0], "order", allowed), bool(opts.get("ascending", True)))
        elif method == "limit":
            if plan.operation is not Operation.SELECT or len(args) != 1:
                raise QueryRejected("limit() is only valid on select with a count")
            n = args[0]
            if isinstance(n, bool) or not isinstance(n, int) or n < 0:
                raise QueryRejected(f"limit(): invalid count {n!r}")
            plan.limit = n
        elif method in ("select", "insert", "update", "delete"):
            raise QueryRejected(f"Only one operation allowed, found a second {method}()")
        else:
            plan.filters.append(_filter(method, args, allowed))

    if plan.operation in (Operation.UPDATE, Operation.DELETE) and not plan.filters:
        raise QueryRejected(f"{plan.operation.value} without a filter is not allowed")
    if plan.operation is Operation.INSERT and plan.filters:
        raise QueryRejected("insert() does not take filters")
    return plan


class QueryCompiler:
    def __init__(
        self,
        model: ChatModel,
        store: Any,
        *,
        max_attempts: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.model = model
        self.store = store
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep = sleep
        self.rng = rng

    def generate(self, query: str) -> str:
        return with_retry(
            lambda: self.model.chat(
                [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": query},
                ],
                temperature=0.1,
                max_tokens=500,
            ),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=self.sleep,
            rng=self.rng,
            label="query generation",
        )

    def _next_id(self, table: str) -> int:
        rows = self.store.select(table, columns="id", order=("id", False), limit=1)
        if rows and rows[0].get("id") is not None:
            return int(rows[0]["id"]) + 1
        return 1

    def execute(self, plan: QueryPlan) -> Any:
        if plan.operation is Operation.SELECT:
            return self.store.select(
                plan.table, plan.filters, columns=plan.columns, order=plan.order, limit=plan.limit
            )
        if plan.operation is Operation.INSERT:
            rows = [dict(r) for r in plan.payload]
            missing = [r for r in rows if "id" not in r]
            if missing:
                next_id = self._next_id(plan.table)
                for r in missing:
                    r["id"] = next_id
                    next_id += 1
            return self.store.insert(plan.table, rows)
        if plan.operation is Operation.UPDATE:
            return self.store.update(plan.table, plan.payload, plan.filters)
        return self.store.delete(plan.table, plan.filters)

    def run(self, query: str) -> QueryResult:
        """Generate, parse and execute. Errors are returned in the result, never raised."""
        generated: Optional[str] = None
        op, table = Operation.SELECT.value, EMPLOYEES
        try:
            generated = clean_generated(self.generate(query))
            LOG.info(f"Generated query: {generated}")
            op, table = inspect_generated(generated)
            plan = parse_query(generated)
            data = self.execute(plan)
        except Exception as e:
            LOG.error(f"Query failed: {e}")
            return QueryResult(None, str(e), op, table, generated)
        if plan.operation is Operation.SELECT:
            message = f"Found {len(data)} row(s) in {plan.table}"
        else:
            message = f"Operation {plan.operation.value} completed successfully on table {plan.table}"
        return QueryResult(data, None, plan.operation.value, plan.table, generated, message=message)
