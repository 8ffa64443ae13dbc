from __future__ import annotations

import json
import logging
import time
from dataclasses import fields
from typing import Any, Iterable, Sequence

from sqlalchemy import (
    BigInteger, Column, Float, Index, Integer, MetaData, String, Table, Text, UniqueConstraint,
    case, cast, create_engine, delete, event, func, or_, select, update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from ..domain.errors import DuplicateKeyError
from ..domain.models import (
    DailySnapshot, DepositIntent, DepositRecord, PendingOriginMarker, WithdrawalRecord,
)
from ..domain.value_types import (
    DEPOSIT_STATUS_RANK, INTENT_STATUS_RANK, PRODUCT, WITHDRAWAL_STATUS_RANK,
    Address, Chain, RecordKind, TxHash,
)
from ..ports.storage import StateStore

log = logging.getLogger(__name__)

metadata = MetaData()

_AMOUNT = String(78)                   # uint256 as decimal string
_HASH = String(66)
_ADDR = String(42)

intents = Table(
    "deposit_intents", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("intent_hash", _HASH, nullable=False),
    Column("chain", String(32), nullable=False),
    Column("vault_id", String(64), nullable=False),
    Column("user_address", _ADDR),
    Column("vault_address", _ADDR),
    Column("asset_address", _ADDR),
    Column("amount", _AMOUNT),
    Column("nonce", _AMOUNT),
    Column("deadline", BigInteger),
    Column("status", String(16), nullable=False),
    Column("fee_amount", _AMOUNT),
    Column("tx_hash", _HASH),
    Column("block_number", BigInteger),
    Column("created_ts", BigInteger),
    Column("executed_ts", BigInteger),
    Column("cancelled_ts", BigInteger),
    UniqueConstraint("intent_hash", "chain", "vault_id", name="uq_intent_identity"),
    Index("ix_intents_user", "user_address", "created_ts"),
)

deposits = Table(
    "deposits", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tx_hash", _HASH, nullable=False),
    Column("chain", String(32), nullable=False),
    Column("vault_id", String(64), nullable=False),
    Column("user_address", _ADDR),
    Column("vault_address", _ADDR),
    Column("asset_address", _ADDR),
    Column("amount", _AMOUNT),
    Column("requested_amount", _AMOUNT),
    Column("shares", _AMOUNT),
    Column("epoch_id", BigInteger),
    Column("status", String(16), nullable=False),
    Column("source", String(16), nullable=False),
    Column("intent_hash", _HASH),
    Column("block_number", BigInteger),
    Column("created_ts", BigInteger),
    Column("executed_ts", BigInteger),
    Column("settled_ts", BigInteger),
    Column("settled_by", String(80)),
    UniqueConstraint("tx_hash", "chain", "vault_id", name="uq_deposit_identity"),
    Index("ix_deposits_user", "user_address", "created_ts"),
    Index("ix_deposits_vault_epoch", "vault_id", "chain", "epoch_id"),
)

withdrawals = Table(
    "withdrawals", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tx_hash", _HASH, nullable=False),
    Column("chain", String(32), nullable=False),
    Column("vault_id", String(64), nullable=False),
    Column("user_address", _ADDR),
    Column("vault_address", _ADDR),
    Column("shares", _AMOUNT),
    Column("assets", _AMOUNT),
    Column("epoch_id", BigInteger),
    Column("status", String(16), nullable=False),
    Column("source", String(16), nullable=False),
    Column("block_number", BigInteger),
    Column("created_ts", BigInteger),
    Column("settled_ts", BigInteger),
    Column("withdrawn_ts", BigInteger),
    Column("settled_by", String(80)),
    Column("withdrawn_by", String(80)),
    UniqueConstraint("tx_hash", "chain", name="uq_withdrawal_identity"),
    Index("ix_withdrawals_user", "user_address", "created_ts"),
)

snapshots = Table(
    "snapshots", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("date", String(10), nullable=False),
    Column("vault_id", String(64), nullable=False),
    Column("chain", String(32), nullable=False),
    Column("vault_address", _ADDR),
    Column("total_deposits", _AMOUNT, nullable=False),
    Column("total_withdrawals", _AMOUNT, nullable=False),
    Column("total_assets", _AMOUNT, nullable=False),
    Column("total_supply", _AMOUNT, nullable=False),
    Column("share_price", String(96)),
    Column("method", String(16), nullable=False),
    Column("flow_total_assets", _AMOUNT),
    Column("updated_ts", BigInteger),
    UniqueConstraint("date", "vault_id", "chain", name="uq_snapshot_identity"),
)

meta = Table(
    "meta", metadata,
    Column("key", String(128), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_ts", BigInteger),
)

markers = Table(
    "pending_origin_markers", metadata,
    Column("tx_hash", _HASH, primary_key=True),
    Column("kind", String(16), nullable=False),
    Column("user_address", _ADDR),
    Column("chain", String(32)),
    Column("created_ts", BigInteger, nullable=False),
    Column("expires_ts", BigInteger, nullable=False),
    Index("ix_markers_expiry", "expires_ts"),
)

vault_ratings = Table(
    "vault_ratings", metadata,
    Column("vault_id", String(64), primary_key=True),
    Column("chain", String(32)),
    Column("score", Float),
    Column("payload", Text),
    Column("updated_ts", BigInteger),
)

vault_rating_history = Table(
    "vault_rating_history", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("vault_id", String(64), nullable=False),
    Column("chain", String(32)),
    Column("score", Float),
    Column("payload", Text),
    Column("created_ts", BigInteger),
)

_RECORD_TABLES = {"deposit": deposits, "withdrawal": withdrawals}
_RECORD_TYPES = {"deposit": DepositRecord, "withdrawal": WithdrawalRecord}
_RANKS = {"deposit_intents": INTENT_STATUS_RANK, "deposits": DEPOSIT_STATUS_RANK,
          "withdrawals": WITHDRAWAL_STATUS_RANK}

# Nullable derived fields: a null in a later event never erases a known value.
_COALESCE = frozenset({
    "shares", "assets", "epoch_id", "intent_hash", "requested_amount", "fee_amount",
    "executed_ts", "settled_ts", "withdrawn_ts", "cancelled_ts", "asset_address", "tx_hash",
})


def _row_to(cls, row) -> Any:
    m = row._mapping
    return cls(**{f.name: m[f.name] for f in fields(cls) if f.name in m})


def _rank(expr, ranks: dict[str, int]):
    return case(ranks, value=expr, else_=-1)


def _merge_set(table: Table, excluded, update_fields: Iterable[str]) -> dict:
    ranks = _RANKS[table.name]
    out: dict = {}
    for name in update_fields:
        col, new = table.c[name], excluded[name]
        if name == "status":
            out[name] = case((_rank(new, ranks) > _rank(col, ranks), new), else_=col)
        elif name == "source":
            out[name] = case((col == PRODUCT, col), else_=new)
        elif name in _COALESCE:
            out[name] = func.coalesce(new, col)
        else:
            out[name] = new
    return out


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def _pragmas(dbapi_conn, _rec) -> None:
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA busy_timeout=5000")
            cur.close()
        return engine
    return create_engine(url)


class SqlStateStore(StateStore):
    """
    SQLAlchemy Core implementation of the state store.
    Upserts go through INSERT .. ON CONFLICT on the identity unique constraints,
    so replaying a block range is side-effect free.
    """
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlStateStore":
        return cls(make_engine(url))

    def close(self) -> None:
        self.engine.dispose()

    # ── upserts ───────────────────────────────────────────────────────────────

    def _upsert(self, table: Table, key: dict, insert_fields: dict, update_fields: dict) -> bool:
        values = {**insert_fields, **update_fields, **key}
        stmt = sqlite_insert(table).values(**values)
        if update_fields:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(key), set_=_merge_set(table, stmt.excluded, update_fields))
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(key))
        where = [table.c[k] == v for k, v in key.items()]
        with self.engine.begin() as conn:
            existed = conn.execute(select(table.c.id).where(*where)).first() is not None
            try:
                conn.execute(stmt)
            except IntegrityError as e:
                raise DuplicateKeyError(f"{table.name} {key}: {e.orig}") from e
        return not existed

    def upsert_intent(self, key: dict, insert_fields: dict, update_fields: dict) -> bool:
        return self._upsert(intents, key, insert_fields, update_fields)

    def upsert_deposit(self, key: dict, insert_fields: dict, update_fields: dict) -> bool:
        return self._upsert(deposits, key, insert_fields, update_fields)

    def upsert_withdrawal(self, key: dict, insert_fields: dict, update_fields: dict) -> bool:
        return self._upsert(withdrawals, key, insert_fields, update_fields)

    # ── settlement ────────────────────────────────────────────────────────────

    def settle_deposits(self, vault_id: str, chain: Chain, user: Address, epoch_id: int,
                        shares: int, ts: int | None, settled_by: str) -> int:
        d = deposits
        base = (d.c.vault_id == vault_id, d.c.chain == chain, d.c.epoch_id == epoch_id)
        values = {"shares": str(shares), "status": "settled", "settled_ts": ts, "settled_by": settled_by}
        with self.engine.begin() as conn:
            if conn.execute(select(d.c.id).where(d.c.settled_by == settled_by)).first():
                return 0
            res = conn.execute(update(d).where(*base, d.c.user_address == user,
                                               d.c.status.in_(("pending", "requested"))).values(**values))
            if res.rowcount:
                return res.rowcount
            if conn.execute(select(d.c.id).where(*base, d.c.user_address == user)).first():
                return 0
            # the settled user is not the requester we recorded (e.g. router as controller):
            # fall back to the epoch only when it is unambiguous
            ids = [r.id for r in conn.execute(select(d.c.id).where(*base, d.c.status == "requested"))]
            if len(ids) != 1:
                return 0
            return conn.execute(update(d).where(d.c.id == ids[0]).values(**values)).rowcount

    def settle_withdrawals(self, vault_id: str, chain: Chain, user: Address, epoch_id: int,
                           assets: int, ts: int | None, settled_by: str) -> int:
        w = withdrawals
        with self.engine.begin() as conn:
            if conn.execute(select(w.c.id).where(w.c.settled_by == settled_by)).first():
                return 0
            return conn.execute(
                update(w).where(w.c.vault_id == vault_id, w.c.chain == chain, w.c.user_address == user,
                                w.c.epoch_id == epoch_id, w.c.status == "pending")
                .values(assets=str(assets), status="settled", settled_ts=ts, settled_by=settled_by)
            ).rowcount

    def mark_withdrawn(self, vault_id: str, chain: Chain, owner: Address, assets: int,
                       ts: int | None, withdrawn_by: str) -> int:
        w = withdrawals
        base = (w.c.vault_id == vault_id, w.c.chain == chain, w.c.user_address == owner, w.c.status == "settled")
        with self.engine.begin() as conn:
            if conn.execute(select(w.c.id).where(w.c.withdrawn_by == withdrawn_by)).first():
                return 0
            row = conn.execute(select(w.c.id).where(*base, w.c.assets == str(assets))
                               .order_by(w.c.created_ts, w.c.id)).first()
            if row is None:
                row = conn.execute(select(w.c.id).where(*base).order_by(w.c.created_ts, w.c.id)).first()
            if row is None:
                return 0
            return conn.execute(update(w).where(w.c.id == row.id).values(
                status="withdrawn", withdrawn_ts=ts, withdrawn_by=withdrawn_by)).rowcount

    def mark_source_product(self, kind: RecordKind, tx_hash: TxHash, chain: Chain | None = None) -> int:
        t = _RECORD_TABLES[kind]
        where = [t.c.tx_hash == tx_hash]
        if chain:
            where.append(t.c.chain == chain)
        with self.engine.begin() as conn:
            matched = conn.execute(select(func.count()).select_from(t).where(*where)).scalar_one()
            if matched:
                conn.execute(update(t).where(*where).values(source=PRODUCT))
            return matched

    # ── attribution lookups ───────────────────────────────────────────────────

    def find_record_by_tx(self, kind: RecordKind, tx_hash: TxHash, chain: Chain,
                          vault_id: str) -> DepositRecord | WithdrawalRecord | None:
        t = _RECORD_TABLES[kind]
        q = select(t).where(t.c.tx_hash == tx_hash, t.c.chain == chain, t.c.vault_id == vault_id)
        with self.engine.connect() as conn:
            row = conn.execute(q).first()
        return _row_to(_RECORD_TYPES[kind], row) if row else None

    def find_open_record(self, kind: RecordKind, vault_id: str, chain: Chain,
                         users: Sequence[Address]) -> DepositRecord | WithdrawalRecord | None:
        t = _RECORD_TABLES[kind]
        q = (select(t).where(t.c.vault_id == vault_id, t.c.chain == chain, t.c.status == "pending",
                             t.c.user_address.in_(list(users)))
             .order_by(t.c.created_ts.desc(), t.c.id.desc()))
        with self.engine.connect() as conn:
            row = conn.execute(q).first()
        return _row_to(_RECORD_TYPES[kind], row) if row else None

    def find_open_intent(self, vault_id: str, chain: Chain, users: Sequence[Address]) -> DepositIntent | None:
        i = intents
        q = (select(i).where(i.c.vault_id == vault_id, i.c.chain == chain, i.c.status == "pending",
                             i.c.user_address.in_(list(users)))
             .order_by(i.c.created_ts.desc(), i.c.id.desc()))
        with self.engine.connect() as conn:
            row = conn.execute(q).first()
        return _row_to(DepositIntent, row) if row else None

    def get_intent(self, intent_hash: str, chain: Chain, vault_id: str) -> DepositIntent | None:
        i = intents
        q = select(i).where(i.c.intent_hash == intent_hash, i.c.chain == chain, i.c.vault_id == vault_id)
        with self.engine.connect() as conn:
            row = conn.execute(q).first()
        return _row_to(DepositIntent, row) if row else None

    # ── markers ───────────────────────────────────────────────────────────────

    def add_marker(self, marker: PendingOriginMarker) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(markers.insert().values(
                    tx_hash=marker.tx_hash, kind=marker.kind, user_address=marker.user_address,
                    chain=marker.chain, created_ts=marker.created_ts, expires_ts=marker.expires_ts))
        except IntegrityError as e:
            raise DuplicateKeyError(f"marker {marker.tx_hash} already exists") from e

    def get_marker(self, tx_hash: TxHash, now: float) -> PendingOriginMarker | None:
        q = select(markers).where(markers.c.tx_hash == tx_hash, markers.c.expires_ts > int(now))
        with self.engine.connect() as conn:
            row = conn.execute(q).first()
        return _row_to(PendingOriginMarker, row) if row else None

    def consume_marker(self, tx_hash: TxHash) -> bool:
        with self.engine.begin() as conn:
            return conn.execute(delete(markers).where(markers.c.tx_hash == tx_hash)).rowcount > 0

    def expire_markers(self, now: float) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(markers).where(markers.c.expires_ts <= int(now))).rowcount

    # ── cursors ───────────────────────────────────────────────────────────────

    def get_cursor(self, chain: Chain) -> int | None:
        with self.engine.connect() as conn:
            v = conn.execute(select(meta.c.value).where(meta.c.key == f"cursor:{chain}")).scalar_one_or_none()
        return int(v) if v is not None else None

    def advance_cursor(self, chain: Chain, block: int) -> int:
        key = f"cursor:{chain}"
        stmt = sqlite_insert(meta).values(key=key, value=str(block), updated_ts=int(time.time()))
        newer = cast(stmt.excluded.value, BigInteger) > cast(meta.c.value, BigInteger)
        stmt = stmt.on_conflict_do_update(index_elements=["key"], set_={
            "value": case((newer, stmt.excluded.value), else_=meta.c.value),
            "updated_ts": case((newer, stmt.excluded.updated_ts), else_=meta.c.updated_ts),
        })
        with self.engine.begin() as conn:
            conn.execute(stmt)
            return int(conn.execute(select(meta.c.value).where(meta.c.key == key)).scalar_one())

    def cursors(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(meta.c.key, meta.c.value).where(meta.c.key.like("cursor:%"))).all()
        return {r.key.split(":", 1)[1]: int(r.value) for r in rows}

    # ── aggregation inputs ────────────────────────────────────────────────────

    def _product(self, table: Table, vault_id: str, chain: Chain, start_ts: int | None, end_ts: int,
                 statuses: Sequence[str]) -> list:
        where = [table.c.vault_id == vault_id, table.c.chain == chain, table.c.source == PRODUCT,
                 table.c.status.in_(list(statuses)), table.c.created_ts < end_ts]
        if start_ts is not None:
            where.append(table.c.created_ts >= start_ts)
        with self.engine.connect() as conn:
            return conn.execute(select(table).where(*where).order_by(table.c.created_ts, table.c.id)).all()

    def product_deposits(self, vault_id: str, chain: Chain, start_ts: int | None, end_ts: int,
                         statuses: Sequence[str]) -> list[DepositRecord]:
        return [_row_to(DepositRecord, r) for r in self._product(deposits, vault_id, chain, start_ts, end_ts, statuses)]

    def product_withdrawals(self, vault_id: str, chain: Chain, start_ts: int | None, end_ts: int,
                            statuses: Sequence[str]) -> list[WithdrawalRecord]:
        return [_row_to(WithdrawalRecord, r) for r in self._product(withdrawals, vault_id, chain, start_ts, end_ts, statuses)]

    def product_users(self, vault_id: str, chain: Chain, until_ts: int) -> list[Address]:
        users: set[str] = set()
        with self.engine.connect() as conn:
            for t in (deposits, withdrawals):
                q = select(t.c.user_address).distinct().where(
                    t.c.vault_id == vault_id, t.c.chain == chain, t.c.source == PRODUCT, t.c.created_ts < until_ts)
                users.update(r.user_address for r in conn.execute(q) if r.user_address)
        return sorted(Address(u) for u in users)

    # ── snapshots ─────────────────────────────────────────────────────────────

    def put_snapshot(self, snap: DailySnapshot) -> None:
        values = {f.name: getattr(snap, f.name) for f in fields(DailySnapshot)}
        values["updated_ts"] = values["updated_ts"] or int(time.time())
        stmt = sqlite_insert(snapshots).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["date", "vault_id", "chain"],
            set_={k: stmt.excluded[k] for k in values if k not in ("date", "vault_id", "chain")})
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def get_snapshot(self, date: str, vault_id: str, chain: Chain) -> DailySnapshot | None:
        s = snapshots
        with self.engine.connect() as conn:
            row = conn.execute(select(s).where(s.c.date == date, s.c.vault_id == vault_id, s.c.chain == chain)).first()
        return _row_to(DailySnapshot, row) if row else None

    def list_snapshots(self, vault_id: str | None = None, chain: Chain | None = None,
                       limit: int = 30) -> list[DailySnapshot]:
        s = snapshots
        q = select(s)
        if vault_id: q = q.where(s.c.vault_id == vault_id)
        if chain: q = q.where(s.c.chain == chain)
        q = q.order_by(s.c.date.desc(), s.c.vault_id).limit(limit)
        with self.engine.connect() as conn:
            return [_row_to(DailySnapshot, r) for r in conn.execute(q)]

    def snapshot_dates(self, vault_id: str, chain: Chain) -> list[str]:
        s = snapshots
        with self.engine.connect() as conn:
            rows = conn.execute(select(s.c.date).where(s.c.vault_id == vault_id, s.c.chain == chain)
                                .order_by(s.c.date)).all()
        return [r.date for r in rows]

    def snapshots_on(self, date: str) -> list[DailySnapshot]:
        s = snapshots
        with self.engine.connect() as conn:
            rows = conn.execute(select(s).where(s.c.date == date).order_by(s.c.chain, s.c.vault_id)).all()
        return [_row_to(DailySnapshot, r) for r in rows]

    # ── API listings ──────────────────────────────────────────────────────────

    def _list(self, table: Table, cls, *, user: str | None, vault_id: str | None, chain: str | None,
              limit: int) -> list:
        q = select(table)
        if user: q = q.where(func.lower(table.c.user_address) == user.lower())
        if vault_id: q = q.where(table.c.vault_id == vault_id)
        if chain: q = q.where(table.c.chain == chain)
        q = q.order_by(table.c.created_ts.desc(), table.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            return [_row_to(cls, r) for r in conn.execute(q)]

    def list_deposits(self, *, user: str | None = None, vault_id: str | None = None,
                      chain: str | None = None, limit: int = 100) -> list[DepositRecord]:
        return self._list(deposits, DepositRecord, user=user, vault_id=vault_id, chain=chain, limit=limit)

    def list_withdrawals(self, *, user: str | None = None, vault_id: str | None = None,
                         chain: str | None = None, limit: int = 100) -> list[WithdrawalRecord]:
        return self._list(withdrawals, WithdrawalRecord, user=user, vault_id=vault_id, chain=chain, limit=limit)

    def list_intents(self, *, user: str | None = None, vault_id: str | None = None,
                     chain: str | None = None, limit: int = 100) -> list[DepositIntent]:
        return self._list(intents, DepositIntent, user=user, vault_id=vault_id, chain=chain, limit=limit)

    def user_records(self, kind: RecordKind, vault_id: str, chain: Chain, user: Address,
                     statuses: Sequence[str], *, product_only: bool = True) -> list:
        t = _RECORD_TABLES[kind]
        where = [t.c.vault_id == vault_id, t.c.chain == chain, t.c.user_address == user,
                 t.c.status.in_(list(statuses))]
        if product_only:
            where.append(or_(t.c.source == PRODUCT, *([t.c.intent_hash.isnot(None)] if kind == "deposit" else [])))
        with self.engine.connect() as conn:
            return [_row_to(_RECORD_TYPES[kind], r) for r in conn.execute(select(t).where(*where))]

    # ── vault ratings (written by the external scoring module) ────────────────

    def save_vault_ratings(self, results: Iterable[dict]) -> int:
        now = int(time.time())
        n = 0
        with self.engine.begin() as conn:
            for r in results:
                payload = json.dumps(r, separators=(",", ":"), default=str)
                row = {"vault_id": r["vault_id"], "chain": r.get("chain"), "score": r.get("score"), "payload": payload}
                stmt = sqlite_insert(vault_ratings).values(**row, updated_ts=now)
                stmt = stmt.on_conflict_do_update(index_elements=["vault_id"], set_={
                    "chain": stmt.excluded.chain, "score": stmt.excluded.score,
                    "payload": stmt.excluded.payload, "updated_ts": stmt.excluded.updated_ts})
                conn.execute(stmt)
                conn.execute(vault_rating_history.insert().values(**row, created_ts=now))
                n += 1
        return n

    def list_vault_ratings(self, vault_id: str | None = None) -> list[dict]:
        q = select(vault_ratings)
        if vault_id: q = q.where(vault_ratings.c.vault_id == vault_id)
        with self.engine.connect() as conn:
            rows = conn.execute(q.order_by(vault_ratings.c.score.desc())).all()
        return [{**json.loads(r.payload or "{}"), "vault_id": r.vault_id, "chain": r.chain,
                 "score": r.score, "updated_ts": r.updated_ts} for r in rows]

    def rating_history(self, vault_id: str, limit: int = 30) -> list[dict]:
        h = vault_rating_history
        q = select(h).where(h.c.vault_id == vault_id).order_by(h.c.created_ts.desc(), h.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            return [{"vault_id": r.vault_id, "chain": r.chain, "score": r.score,
                     "created_ts": r.created_ts} for r in conn.execute(q)]
