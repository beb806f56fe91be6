"""Certificate order repository.

Every mutation is a single conditional ``UPDATE``/``DELETE`` that
re-checks the persisted status (and work flag where relevant) and
returns the affected row, so a caller that lost a race gets ``None``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from psycopg.errors import UniqueViolation
from psycopg.types.json import Jsonb
from pypgkit import BaseRepository, Database

from certflow.core.types import FLAG_COLUMNS, CertType, OrderStatus, WorkFlag
from certflow.db.unit_of_work import UnitOfWork
from certflow.models.order import Order

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

# Columns a transition may overwrite besides status, flags and retries.
_MUTABLE_FIELDS = frozenset(
    {
        "domain",
        "cert_type",
        "last_error",
        "acme_output",
        "txt_host",
        "txt_values",
        "cert_path",
        "key_path",
        "fullchain_path",
    },
)


def _read_txt_values(row: dict) -> tuple[str, ...]:
    """Return TXT values from the JSONB list or the legacy text column."""
    values = row.get("txt_values")
    if values:
        return tuple(str(v) for v in values)
    legacy = row.get("txt_value")
    if not legacy:
        return ()
    return tuple(line.strip() for line in legacy.splitlines() if line.strip())


def _flags_from_row(row: dict) -> frozenset[WorkFlag]:
    return frozenset(flag for flag, column in FLAG_COLUMNS.items() if row.get(column))


def _flag_columns(flags: Iterable[WorkFlag]) -> dict[str, bool]:
    wanted = set(flags)
    return {column: flag in wanted for flag, column in FLAG_COLUMNS.items()}


def _column_value(column: str, value: Any) -> Any:
    if column == "txt_values":
        return Jsonb(list(value or ()))
    if column == "cert_type" and value is not None:
        return CertType(value).value
    return value


class OrderRepository(BaseRepository[Order]):
    table_name = "cert_orders"
    primary_key = "id"

    def _row_to_entity(self, row: dict) -> Order:
        cert_type = row.get("cert_type")
        return Order(
            id=row["id"],
            user_id=row["user_id"],
            status=OrderStatus(row["status"]),
            domain=row.get("domain") or "",
            cert_type=CertType(cert_type) if cert_type else None,
            flags=_flags_from_row(row),
            retry_count=row.get("retry_count") or 0,
            last_error=row.get("last_error"),
            acme_output=row.get("acme_output"),
            txt_host=row.get("txt_host"),
            txt_values=_read_txt_values(row),
            cert_path=row.get("cert_path"),
            key_path=row.get("key_path"),
            fullchain_path=row.get("fullchain_path"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_row(self, entity: Order) -> dict:
        row = {
            "user_id": entity.user_id,
            "status": entity.status.value,
            "domain": entity.domain,
            "cert_type": entity.cert_type.value if entity.cert_type else None,
            "retry_count": entity.retry_count,
            "last_error": entity.last_error,
            "acme_output": entity.acme_output,
            "txt_host": entity.txt_host,
            "txt_values": Jsonb(list(entity.txt_values)),
            "txt_value": entity.txt_values[0] if entity.txt_values else None,
            "cert_path": entity.cert_path,
            "key_path": entity.key_path,
            "fullchain_path": entity.fullchain_path,
            **_flag_columns(entity.flags),
        }
        if entity.id is not None:
            row["id"] = entity.id
        return row

    # -- inserts -------------------------------------------------------------

    def add(self, order: Order) -> Order:
        """Insert *order* and return it with its generated id."""
        row = self._entity_to_row(order)
        columns = ", ".join(row)
        placeholders = ", ".join(["%s"] * len(row))
        db = Database.get_instance()
        inserted = db.fetch_one(
            f"INSERT INTO cert_orders ({columns}) VALUES ({placeholders}) RETURNING *",
            tuple(row.values()),
            as_dict=True,
        )
        return self._row_to_entity(inserted)

    def recreate(self, order_id: int, from_status: OrderStatus, fresh: Order) -> Order | None:
        """Delete an order and insert *fresh* in one transaction.

        Returns the new order, or ``None`` if the old order was no
        longer in *from_status* (nothing is written in that case).
        """
        with UnitOfWork() as uow:
            removed = uow.fetch_one(
                "DELETE FROM cert_orders WHERE id = %s AND status = %s RETURNING id",
                (order_id, from_status.value),
            )
            if removed is None:
                return None
            row = self._entity_to_row(fresh)
            row.pop("id", None)
            inserted = uow.insert("cert_orders", row)
        return self._row_to_entity(inserted)

    # -- queries -------------------------------------------------------------

    def find_draft(self, user_id: int) -> Order | None:
        """Return the user's newest domain-less ``created`` order."""
        db = Database.get_instance()
        row = db.fetch_one(
            "SELECT * FROM cert_orders "
            "WHERE user_id = %s AND status = %s AND domain = '' "
            "ORDER BY id DESC LIMIT 1",
            (user_id, OrderStatus.CREATED.value),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None

    def find_open_by_domain(
        self,
        user_id: int,
        domain: str,
        exclude_id: int | None = None,
    ) -> Order | None:
        """Return a non-issued order of *user_id* for *domain*, if any."""
        db = Database.get_instance()
        row = db.fetch_one(
            "SELECT * FROM cert_orders "
            "WHERE user_id = %s AND domain = %s AND status <> %s "
            "  AND id <> COALESCE(%s, -1) "
            "ORDER BY id DESC LIMIT 1",
            (user_id, domain, OrderStatus.ISSUED.value, exclude_id),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None

    def find_latest_by_domain(self, user_id: int, domain: str) -> Order | None:
        db = Database.get_instance()
        row = db.fetch_one(
            "SELECT * FROM cert_orders WHERE user_id = %s AND domain = %s "
            "ORDER BY id DESC LIMIT 1",
            (user_id, domain),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None

    def find_by_user(self, user_id: int, limit: int = 50) -> list[Order]:
        """Return the user's orders, newest first."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT * FROM cert_orders WHERE user_id = %s ORDER BY id DESC LIMIT %s",
            (user_id, limit),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

    def find_flagged(self, status: OrderStatus, flag: WorkFlag, limit: int) -> list[Order]:
        """Return up to *limit* orders in *status* carrying *flag*, oldest first."""
        column = FLAG_COLUMNS[flag]
        db = Database.get_instance()
        rows = db.fetch_all(
            f"SELECT * FROM cert_orders WHERE status = %s AND {column} "
            "ORDER BY updated_at, id LIMIT %s",
            (status.value, limit),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

    def find_failed_before(self, cutoff: datetime, limit: int) -> list[Order]:
        """Return up to *limit* ``failed`` orders last touched before *cutoff*."""
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT * FROM cert_orders WHERE status = %s AND updated_at < %s "
            "ORDER BY updated_at, id LIMIT %s",
            (OrderStatus.FAILED.value, cutoff, limit),
            as_dict=True,
        )
        return [self._row_to_entity(r) for r in rows]

    def count_by_status(self) -> dict[str, int]:
        db = Database.get_instance()
        rows = db.fetch_all(
            "SELECT status, count(*) AS n FROM cert_orders GROUP BY status",
            as_dict=True,
        )
        return {r["status"]: r["n"] for r in rows}

    # -- conditional writes --------------------------------------------------

    def transition(  # noqa: PLR0913
        self,
        order_id: int,
        from_status: OrderStatus,
        to_status: OrderStatus,
        *,
        require_flag: WorkFlag | None = None,
        flags: Iterable[WorkFlag] | None = None,
        retry_count: int | None = None,
        **fields: Any,
    ) -> Order | None:
        """Atomic compare-and-swap status transition.

        Parameters
        ----------
        order_id:
            Order to update.
        from_status:
            Status the persisted row must still hold.
        to_status:
            New status (may equal *from_status*).
        require_flag:
            Work flag the persisted row must still carry.
        flags:
            Complete replacement flag set; ``None`` leaves flags alone.
        retry_count:
            New retry counter; ``None`` leaves it alone.
        **fields:
            Other columns to overwrite (see ``_MUTABLE_FIELDS``).

        Returns
        -------
        Order or None
            The updated order, or ``None`` if the guard did not match.

        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            msg = f"Cannot update order columns: {sorted(unknown)}"
            raise ValueError(msg)

        set_parts = ["status = %s", "updated_at = now()"]
        params: list = [to_status.value]

        if flags is not None:
            for column, value in _flag_columns(flags).items():
                set_parts.append(f"{column} = %s")
                params.append(value)
        if retry_count is not None:
            set_parts.append("retry_count = %s")
            params.append(retry_count)
        for column, value in fields.items():
            set_parts.append(f"{column} = %s")
            params.append(_column_value(column, value))
            if column == "txt_values":
                set_parts.append("txt_value = %s")
                params.append(value[0] if value else None)

        where = "id = %s AND status = %s"
        params.extend([order_id, from_status.value])
        if require_flag is not None:
            where += f" AND {FLAG_COLUMNS[require_flag]}"

        db = Database.get_instance()
        row = db.fetch_one(
            f"UPDATE cert_orders SET {', '.join(set_parts)} WHERE {where} RETURNING *",
            tuple(params),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None

    def assign_domain(
        self,
        order_id: int,
        domain: str,
        cert_type: CertType,
    ) -> Order | None:
        """Set the domain of a draft and raise its ``generate_dns`` flag.

        Only succeeds while the order is ``created`` with no domain.
        """
        db = Database.get_instance()
        try:
            row = db.fetch_one(
                "UPDATE cert_orders "
                "SET domain = %s, cert_type = %s, need_dns_generate = TRUE, "
                "    retry_count = 0, last_error = NULL, updated_at = now() "
                "WHERE id = %s AND status = %s AND domain = '' "
                "RETURNING *",
                (domain, cert_type.value, order_id, OrderStatus.CREATED.value),
                as_dict=True,
            )
        except UniqueViolation:
            # Another open order for this (user, domain) won the race.
            return None
        return self._row_to_entity(row) if row else None

    def delete_if(self, order_id: int, statuses: Iterable[OrderStatus]) -> Order | None:
        """Delete an order if its status is one of *statuses*.

        Returns the deleted order, or ``None`` if nothing matched.
        """
        allowed = [s.value for s in statuses]
        db = Database.get_instance()
        row = db.fetch_one(
            "DELETE FROM cert_orders WHERE id = %s AND status = ANY(%s) RETURNING *",
            (order_id, allowed),
            as_dict=True,
        )
        return self._row_to_entity(row) if row else None
