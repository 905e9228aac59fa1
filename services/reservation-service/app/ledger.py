"""
Inventory ledger: the per-accommodation available-unit counter.

Both operations run on the caller's session so they commit or roll back
together with the booking status write that triggered them.
"""
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ConflictError
from .models import Accommodation


async def decrement(db: AsyncSession, accommodation_id: int) -> int:
    """
    Conditional decrement: only succeeds while units remain.

    The UPDATE itself is the availability check, so two writers racing
    for the last unit cannot both pass.
    """
    res = await db.execute(
        update(Accommodation)
        .where(
            Accommodation.id == accommodation_id,
            Accommodation.available_units > 0,
        )
        .values(available_units=Accommodation.available_units - 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        raise ConflictError(f"No units left for accommodation {accommodation_id}")
    return await _current_units(db, accommodation_id)


async def increment(db: AsyncSession, accommodation_id: int) -> int:
    await db.execute(
        update(Accommodation)
        .where(Accommodation.id == accommodation_id)
        .values(available_units=Accommodation.available_units + 1)
        .execution_options(synchronize_session=False)
    )
    return await _current_units(db, accommodation_id)


async def _current_units(db: AsyncSession, accommodation_id: int) -> int:
    res = await db.execute(
        select(Accommodation.available_units)
        .where(Accommodation.id == accommodation_id)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one()
