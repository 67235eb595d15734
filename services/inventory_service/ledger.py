"""Inventory Ledger: per-variant stock counters with optimistic concurrency.

Every mutation is a read-compute-write cycle against one ``InventoryRecord``.
The write is conditional on the ``version`` that was read and bumps it by
one, so two workers racing for the same variant can never both apply a
change computed from the same snapshot. The loser re-reads and tries again
(bounded by ``max_retries``) and reports ``ConcurrencyExhausted`` if it
never wins. Decrements that would go below zero are rejected before any
write is attempted, so a failed decrement leaves the record untouched.

Reads (``get_record``, ``get_available``, ``check_availability``) are
point-in-time only; callers must rely on ``adjust`` to enforce limits.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from shared.concurrency import VersionConflict, run_optimistic
from shared.database import utcnow
from shared.errors import (
    InsufficientStock,
    InventoryLimitExceeded,
    InventoryRecordExists,
    InventoryRecordNotFound,
    StorageError,
)

from .models import (
    DEFAULT_VARIANT,
    AdjustOperation,
    InventoryAdjustment,
    InventoryRecord,
    StockCounter,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VariantRef:
    """Identifies one inventory record."""

    product_id: str
    variant_id: Optional[str] = None

    @property
    def variant_key(self) -> str:
        return self.variant_id or DEFAULT_VARIANT

    def __str__(self) -> str:
        return f"{self.product_id}/{self.variant_key}"


class InventorySnapshot(BaseModel):
    """Committed state of an inventory record."""
    product_id: str
    variant_id: str
    sku: Optional[str] = None
    available: int
    reserved: int
    version: int

    class Config:
        from_attributes = True


class InventoryLedger:
    """Atomic stock adjustments over shared inventory records."""

    def __init__(
        self,
        session_factory,
        max_retries: int = 3,
        retry_base_delay: float = 0.1,
        retry_max_delay: float = 2.0,
        max_inventory: int = 999999,
    ):
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_inventory = max_inventory

    async def create_record(
        self,
        ref: VariantRef,
        available: int = 0,
        sku: Optional[str] = None,
    ) -> InventorySnapshot:
        """Define stock for a new variant."""
        if available < 0:
            raise ValueError("Initial stock cannot be negative")
        if available > self.max_inventory:
            raise InventoryLimitExceeded(f"Inventory limit exceeded. Maximum allowed: {self.max_inventory}")

        record = InventoryRecord(
            product_id=ref.product_id,
            variant_id=ref.variant_key,
            sku=sku,
            available=available,
            reserved=0,
            version=0,
        )

        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise InventoryRecordExists(f"Inventory record for {ref} already exists") from e
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to create inventory record for {ref}: {e}") from e

        logger.info(f"Created inventory record {ref} with {available} available")
        return InventorySnapshot.model_validate(record)

    async def get_record(self, ref: VariantRef) -> InventorySnapshot:
        """Read the current committed state of a record."""
        try:
            async with self.session_factory() as session:
                record = await self._load(session, ref)
                return InventorySnapshot.model_validate(record)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read inventory record {ref}: {e}") from e

    async def get_available(self, ref: VariantRef) -> int:
        """Free stock (on hand minus reserved) at the time of the read."""
        record = await self.get_record(ref)
        return max(0, record.available - record.reserved)

    async def check_availability(self, ref: VariantRef, quantity: int) -> bool:
        """Whether ``quantity`` units are free right now. Not a guarantee at commit time."""
        try:
            return await self.get_available(ref) >= quantity
        except InventoryRecordNotFound:
            return False

    async def adjust(
        self,
        ref: VariantRef,
        delta: int,
        operation: Union[AdjustOperation, str],
        max_retries: Optional[int] = None,
        counter: Union[StockCounter, str] = StockCounter.AVAILABLE,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> InventorySnapshot:
        """
        Apply one stock adjustment under optimistic concurrency.

        Args:
            ref: Record to adjust
            delta: Quantity; its sign is ignored for increment/decrement,
                and it is the target value for set
            operation: increment, decrement or set
            max_retries: Retries after a lost race (defaults to the ledger's)
            counter: Which counter to adjust (available or reserved)
            reason: Free-text reason stored in the audit trail
            reference: Order id or event id stored in the audit trail

        Returns:
            The committed record state

        Raises:
            InsufficientStock: the decrement would go below zero; nothing written
            InventoryLimitExceeded: the increment would pass the inventory cap
            InventoryRecordNotFound: no record for ``ref``
            ConcurrencyExhausted: every attempt lost the race; nothing written
            StorageError: the store failed
        """
        operation = AdjustOperation(operation)
        counter = StockCounter(counter)
        retries = self.max_retries if max_retries is None else max_retries

        async def attempt() -> InventorySnapshot:
            return await self._adjust_once(ref, delta, operation, counter, reason, reference)

        snapshot = await run_optimistic(
            attempt,
            resource=f"inventory record {ref}",
            max_retries=retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

        logger.info(
            f"Adjusted {counter.value} of {ref} ({operation.value} {abs(delta)}): "
            f"available={snapshot.available}, reserved={snapshot.reserved}, version={snapshot.version}"
        )
        return snapshot

    async def reserve(self, ref: VariantRef, quantity: int, reference: Optional[str] = None) -> InventorySnapshot:
        """Place a provisional hold; never touches the available counter."""
        if quantity <= 0:
            raise ValueError("Reservation quantity must be positive")
        return await self.adjust(
            ref,
            quantity,
            AdjustOperation.INCREMENT,
            counter=StockCounter.RESERVED,
            reason="reservation",
            reference=reference,
        )

    async def release(self, ref: VariantRef, quantity: int, reference: Optional[str] = None) -> InventorySnapshot:
        """Drop a provisional hold."""
        if quantity <= 0:
            raise ValueError("Release quantity must be positive")
        return await self.adjust(
            ref,
            -quantity,
            AdjustOperation.DECREMENT,
            counter=StockCounter.RESERVED,
            reason="reservation released",
            reference=reference,
        )

    async def list_adjustments(self, ref: VariantRef, limit: int = 100) -> List[InventoryAdjustment]:
        """Audit trail for a record, oldest first."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(InventoryAdjustment)
                    .where(
                        InventoryAdjustment.product_id == ref.product_id,
                        InventoryAdjustment.variant_id == ref.variant_key,
                    )
                    .order_by(InventoryAdjustment.version)
                    .limit(limit)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read adjustments for {ref}: {e}") from e

    async def _adjust_once(
        self,
        ref: VariantRef,
        delta: int,
        operation: AdjustOperation,
        counter: StockCounter,
        reason: Optional[str],
        reference: Optional[str],
    ) -> InventorySnapshot:
        """One read-compute-conditional-write cycle."""
        try:
            async with self.session_factory() as session:
                record = await self._load(session, ref)
                read_version = record.version
                current = getattr(record, counter.value)
                new_quantity = self._compute(ref, record, current, delta, operation, counter)
                new_version = read_version + 1

                result = await session.execute(
                    update(InventoryRecord)
                    .where(
                        InventoryRecord.id == record.id,
                        InventoryRecord.version == read_version,
                    )
                    .values({counter.value: new_quantity, "version": new_version, "updated_at": utcnow()})
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount != 1:
                    await session.rollback()
                    raise VersionConflict(f"inventory record {ref}", read_version)

                session.add(
                    InventoryAdjustment(
                        inventory_record_id=record.id,
                        product_id=record.product_id,
                        variant_id=record.variant_id,
                        counter=counter.value,
                        operation=operation.value,
                        delta=new_quantity - current,
                        previous_quantity=current,
                        new_quantity=new_quantity,
                        version=new_version,
                        reason=reason,
                        reference=reference,
                    )
                )
                await session.commit()

                # The in-memory record still holds the values that were read
                return InventorySnapshot.model_validate(record).model_copy(
                    update={counter.value: new_quantity, "version": new_version}
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to adjust inventory record {ref}: {e}") from e

    def _compute(
        self,
        ref: VariantRef,
        record: InventoryRecord,
        current: int,
        delta: int,
        operation: AdjustOperation,
        counter: StockCounter,
    ) -> int:
        """Candidate new value for the counter, or raise if the change is not allowed."""
        quantity = abs(delta)

        if operation == AdjustOperation.DECREMENT:
            if current - quantity < 0:
                raise InsufficientStock(
                    product_id=ref.product_id,
                    variant_id=ref.variant_id,
                    requested=quantity,
                    available=current,
                    counter=counter.value,
                )
            return current - quantity

        if operation == AdjustOperation.INCREMENT:
            new_quantity = current + quantity
            if counter == StockCounter.RESERVED and new_quantity > record.available:
                raise InsufficientStock(
                    product_id=ref.product_id,
                    variant_id=ref.variant_id,
                    requested=quantity,
                    available=max(0, record.available - current),
                    counter=counter.value,
                )
        else:
            if delta < 0:
                raise ValueError("Stock level cannot be set to a negative value")
            new_quantity = delta

        if new_quantity > self.max_inventory:
            raise InventoryLimitExceeded(f"Inventory limit exceeded. Maximum allowed: {self.max_inventory}")
        return new_quantity

    async def _load(self, session, ref: VariantRef) -> InventoryRecord:
        result = await session.execute(
            select(InventoryRecord).where(
                InventoryRecord.product_id == ref.product_id,
                InventoryRecord.variant_id == ref.variant_key,
            )
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise InventoryRecordNotFound(f"No inventory record for {ref}")
        return record
