"""
Optimistic concurrency on top of any table with an integer ``version`` column.

``compare_and_swap`` issues a single ``UPDATE ... WHERE version = :expected``
and checks the affected row count, so two writers holding the same snapshot
can never both succeed.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, Iterable, TypeVar

from sqlalchemy import inspect, update
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.ext.asyncio import AsyncSession

from chainattend.core.errors import VersionConflict

T = TypeVar("T")


@dataclass(frozen=True)
class Versioned(Generic[T]):
    """A row together with the version it was read at (or a client's ETag)."""

    value: T
    version: int

    @property
    def etag(self) -> str:
        return str(self.version)

    @classmethod
    def of(cls, row) -> "Versioned":
        return cls(value=row, version=row.version)

    async def swap(self, db: AsyncSession, changes: Dict[str, Any], **kwargs) -> "Versioned":
        """CAS ``value`` from this version; returns the row at its new version."""
        new_version = await swap_row(db, self.value, changes, expected=self.version, **kwargs)
        return Versioned(value=self.value, version=new_version)


def parse_etag(etag) -> int:
    try:
        return int(str(etag).strip().strip('"').removeprefix("W/").strip('"'))
    except (TypeError, ValueError):
        raise VersionConflict(f"Unrecognised ETag {etag!r}")


async def compare_and_swap(
    db: AsyncSession,
    model,
    keys: Dict[str, Any],
    expected: int,
    changes: Dict[str, Any],
    *,
    bump: bool = True,
    where: Iterable = (),
) -> int:
    """Apply ``changes`` only if the stored version equals ``expected``.

    Extra ``where`` clauses narrow the swap further (e.g. ``status == ACTIVE``).
    Returns the new version; raises VersionConflict when no row matched.
    Does not commit.
    """
    values = dict(changes)
    if bump:
        values["version"] = model.version + 1

    stmt = update(model)
    for name, value in keys.items():
        stmt = stmt.where(getattr(model, name) == value)
    stmt = stmt.where(model.version == expected)
    for clause in where:
        stmt = stmt.where(clause)
    stmt = stmt.values(**values).execution_options(synchronize_session=False)

    result = await db.execute(stmt)
    if result.rowcount != 1:
        raise VersionConflict(
            f"{model.__tablename__} {tuple(keys.values())} changed since version {expected}"
        )
    return expected + 1 if bump else expected


async def swap_row(db: AsyncSession, row, changes: Dict[str, Any], *, expected: int = None, bump: bool = True, where: Iterable = ()) -> int:
    """``compare_and_swap`` against a loaded ORM row.

    Uses the row's own version unless ``expected`` is given (a client ETag,
    say) and mirrors the written values onto the instance.
    """
    mapper = inspect(row).mapper
    keys = {column.key: getattr(row, column.key) for column in mapper.primary_key}
    if expected is None:
        expected = row.version
    new_version = await compare_and_swap(db, type(row), keys, expected, changes, bump=bump, where=where)
    for name, value in changes.items():
        set_committed_value(row, name, value)
    set_committed_value(row, "version", new_version)
    return new_version
