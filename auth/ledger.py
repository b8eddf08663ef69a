"""
auth/ledger.py -- SessionLedger: durable lifecycle record of refresh credentials.

The ledger is the sole source of truth for which refresh credentials are
currently usable. A refresh JWT with a valid signature and unexpired `exp`
claim is still dead if its ledger row is revoked or missing.

Pattern: Repository + Data Mapper (same as auth/store.py).

Security design:
  token_hash = SHA-256(token_id), unsalted. The token-id is 256 bits of
  random data, so there is nothing to guess offline and a slow password hash
  would only cost latency. Determinism gives an O(1) lookup through the
  UNIQUE index on token_hash.

  revoke() is a conditional UPDATE restricted to rows that are not yet
  revoked, and reports whether it matched. Rotation relies on this: of two
  requests racing to rotate the same credential, exactly one sees rowcount=1.
  The loser is treated as a replay by auth/tokens.py.

  revoke_family() revokes every active session of the owning user, not just
  the chain descending from the replayed credential. Whoever replayed one
  stolen credential may hold others from the same compromise.

Record state machine (no transition re-activates a record):
  ACTIVE --rotate-->              REVOKED, replaced_by_token set
  ACTIVE --logout/logout-all-->   REVOKED, replaced_by_token NULL
  ACTIVE --cap eviction-->        REVOKED, replaced_by_token NULL
  any    --expires_at passed-->   deleted by purge on the next persist()

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, func, select
from sqlalchemy.engine import Engine

from auth.models import SessionRecord
from core.clock import Clock, to_iso, utc_now
from core.database import make_engine

logger = logging.getLogger("rotaguard.ledger")

DEFAULT_MAX_SESSIONS = 5

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "refresh_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex of token-id
    Column("user_id", Integer, nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("replaced_by_token", String(128)),  # successor token-id, rotation only
    Column("user_agent", String(512)),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
)


def hash_token_id(token_id: str) -> str:
    """Return the SHA-256 hex digest used as the ledger lookup key."""
    return hashlib.sha256(token_id.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionLedger:
    """Repository for SessionRecord rows.

    Usage:
        ledger = SessionLedger("sqlite:///rotaguard.db", max_sessions=5)
        ledger.persist(user_id, token_id, expires_at)
        record = ledger.find_active(hash_token_id(token_id))
        ledger.close()
    """

    def __init__(
        self,
        db_url: str,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        clock: Clock = utc_now,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self._max_sessions = max_sessions
        self._clock = clock
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def persist(
        self,
        user_id: int,
        token_id: str,
        expires_at: datetime,
        user_agent: str | None = None,
        ip_address: str | None = None,
        replacing_token_id: str | None = None,
    ) -> SessionRecord:
        """Record a newly issued refresh credential.

        Runs in one transaction:
          1. Delete expired rows (opportunistic reclamation, any user).
          2. If the user already holds max_sessions active records, revoke the
             oldest by created_at until the new one fits (cap eviction).
             replacing_token_id names the record a rotation is about to
             revoke; it is not counted and never evicted.
          3. Insert the new record keyed by hash_token_id(token_id).

        Raises sqlalchemy.exc.IntegrityError on a token_hash collision.
        """
        now_iso = to_iso(self._clock())
        record = SessionRecord(
            user_id=user_id,
            token_hash=hash_token_id(token_id),
            expires_at=to_iso(expires_at),
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now_iso,
        )
        with self.engine.connect() as conn:
            purged = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now_iso)).rowcount
            if purged:
                logger.debug("Purged %d expired session(s)", purged)

            active = (_sessions.c.user_id == user_id) & (_sessions.c.is_revoked == 0)
            if replacing_token_id is not None:
                active = active & (_sessions.c.token_hash != hash_token_id(replacing_token_id))
            active_ids = (
                conn.execute(
                    select(_sessions.c.id).where(active).order_by(_sessions.c.created_at, _sessions.c.id)
                )
                .scalars()
                .all()
            )
            overflow = len(active_ids) - (self._max_sessions - 1)
            if overflow > 0:
                evicted = active_ids[:overflow]
                conn.execute(
                    _sessions.update()
                    .where(_sessions.c.id.in_(evicted) & (_sessions.c.is_revoked == 0))
                    .values(is_revoked=1, revoked_at=now_iso)
                )
                logger.info(
                    "Session cap reached for user_id=%s: evicted %d oldest session(s) %s",
                    user_id,
                    len(evicted),
                    evicted,
                )

            result = conn.execute(
                _sessions.insert().values(
                    token_hash=record.token_hash,
                    user_id=record.user_id,
                    expires_at=record.expires_at,
                    is_revoked=0,
                    user_agent=record.user_agent,
                    ip_address=record.ip_address,
                    created_at=record.created_at,
                )
            )
            conn.commit()
            record.id = result.inserted_primary_key[0]
        return record

    def revoke(self, token_id: str, replaced_by_token_id: str | None = None) -> bool:
        """Revoke the record for token_id if it is still active.

        This is the atomic "find active and revoke" step: the UPDATE only
        matches rows with is_revoked = 0. Returns True if this call performed
        the revocation, False if the record was absent or already revoked.
        """
        values: dict = {"is_revoked": 1, "revoked_at": to_iso(self._clock())}
        if replaced_by_token_id is not None:
            values["replaced_by_token"] = replaced_by_token_id
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == hash_token_id(token_id)) & (_sessions.c.is_revoked == 0))
                .values(**values)
            )
            conn.commit()
        return result.rowcount == 1

    def revoke_all(self, user_id: int) -> int:
        """Revoke every active record for user_id. Returns the number revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_revoked == 0))
                .values(is_revoked=1, revoked_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount

    def revoke_family(self, token_id: str) -> int | None:
        """Revoke all sessions of the user who owns token_id.

        The record may already be revoked -- that is the replay case. Returns
        the owning user_id, or None if no record exists for token_id.
        """
        record = self.find_by_token_id(token_id)
        if record is None:
            return None
        self.revoke_all(record.user_id)
        return record.user_id

    def revoke_session(self, session_id: int, user_id: int) -> bool:
        """Revoke one session by primary key. user_id is checked to prevent IDOR.

        Returns True if a session was revoked, False if not found, not owned by
        user_id, or already revoked.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.user_id == user_id)
                    & (_sessions.c.is_revoked == 0)
                )
                .values(is_revoked=1, revoked_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def purge_expired(self) -> int:
        """Delete every row whose expires_at has passed. Returns rows deleted."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= to_iso(self._clock())))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_active(self, token_hash: str) -> SessionRecord | None:
        """Return the non-revoked record for token_hash, or None.

        Expiry is deliberately not checked here: the caller has already
        validated the signed `exp` claim of the presented credential.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where((_sessions.c.token_hash == token_hash) & (_sessions.c.is_revoked == 0))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_by_token_id(self, token_id: str) -> SessionRecord | None:
        """Return the record for token_id in any state, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(_sessions.c.token_hash == hash_token_id(token_id))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active(self, user_id: int) -> list[SessionRecord]:
        """Return the user's unexpired, unrevoked sessions (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.is_revoked == 0)
                    & (_sessions.c.expires_at > to_iso(self._clock()))
                )
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_active(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_sessions)
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.is_revoked == 0)
                    & (_sessions.c.expires_at > to_iso(self._clock()))
                )
            ).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_session(row) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        is_revoked=bool(row.is_revoked),
        revoked_at=row.revoked_at,
        replaced_by_token=row.replaced_by_token,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        created_at=row.created_at,
    )
