"""Tests for the optimistic mutation executor."""

import asyncio
from datetime import date

import pytest
from pytest_mock import MockerFixture
from sqlalchemy.exc import SQLAlchemyError

from conftest import FakeServerState
from lotkeeper.errors import ValidationFailure
from lotkeeper.executor import MutationKind, MutationStatus
from lotkeeper.models import EntityType, OperatingMode, Unit
from lotkeeper.notices import NoticeLevel
from lotkeeper.session import InventorySession


class TestLocalMutations:
    """Executor behaviour in local mode."""

    @pytest.mark.asyncio
    async def test_add_product_commits_and_persists(self, local_session: InventorySession) -> None:
        """A new product is recorded and saved immediately."""
        outcome = await local_session.executor.add_product("Tordon", "L", 12, batch_id="b1")

        assert outcome.status == MutationStatus.COMMITTED
        assert outcome.kind == MutationKind.ADD_PRODUCT
        assert outcome.record is not None
        assert outcome.record.action == "created"
        assert outcome.record.batch_id == "b1"
        stored = local_session.context.mirror.load(OperatingMode.LOCAL)
        assert "Tordon" in [p.name for p in stored.products]
        assert stored.history_records[-1].id == outcome.record.id

    @pytest.mark.asyncio
    async def test_missing_batch_id_gets_its_own_batch(self, local_session: InventorySession) -> None:
        """A standalone mutation forms a one-record batch."""
        outcome = await local_session.executor.add_product("Tordon", Unit.VOLUME, 1)
        assert outcome.record is not None
        assert outcome.record.batch_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name,unit,quantity",
        [("", "L", 1), ("   ", "kg", 1), ("Tordon", "g", 1), ("Tordon", "L", -5)],
    )
    async def test_add_product_validation(
        self, local_session: InventorySession, name: str, unit: str, quantity: float
    ) -> None:
        """Invalid input fails before any state change."""
        before = [p.id for p in local_session.products]
        history = len(local_session.state.history_records)

        with pytest.raises(ValidationFailure):
            await local_session.executor.add_product(name, unit, quantity)

        assert [p.id for p in local_session.products] == before
        assert len(local_session.state.history_records) == history

    @pytest.mark.asyncio
    async def test_update_details_records_changed_fields(self, local_session: InventorySession) -> None:
        """Only fields that changed are recorded."""
        product = local_session.products[0]
        outcome = await local_session.executor.update_product_details(product.id, name="Alade Plus", unit="L")

        assert product.name == "Alade Plus"
        assert outcome.record is not None
        fields = [c.field for c in outcome.record.details.changed_fields]  # type: ignore[union-attr]
        assert fields == ["name"]

    @pytest.mark.asyncio
    async def test_update_details_without_change_is_rejected(self, local_session: InventorySession) -> None:
        """Saving identical details is a validation failure."""
        product = local_session.products[0]
        with pytest.raises(ValidationFailure):
            await local_session.executor.update_product_details(product.id, name=product.name)

    @pytest.mark.asyncio
    async def test_unknown_product(self, local_session: InventorySession) -> None:
        """Mutations on unknown ids are validation failures."""
        with pytest.raises(ValidationFailure):
            await local_session.executor.remove_product("missing")
        with pytest.raises(ValidationFailure):
            await local_session.executor.delete_lot("missing")

    @pytest.mark.asyncio
    async def test_direct_quantity_set_on_lot_product_is_rejected(self, local_session: InventorySession) -> None:
        """Products with lots derive their quantity."""
        product = local_session.products[0]
        await local_session.executor.create_lot(product.id, 10, date(2026, 1, 1))

        with pytest.raises(ValidationFailure):
            await local_session.executor.set_product_quantity(product.id, 500)

        assert product.quantity == 10

    @pytest.mark.asyncio
    async def test_lot_mutations_keep_quantity_invariant(self, local_session: InventorySession) -> None:
        """After every lot commit the product quantity is the lot sum."""
        product = local_session.products[0]
        executor = local_session.executor

        first = await executor.create_lot(product.id, 50, date(2026, 1, 1))
        assert product.quantity == 50
        second = await executor.create_lot(product.id, 70, date(2026, 2, 1))
        assert product.quantity == 120
        await executor.update_lot(second.entity_id, quantity=60)
        assert product.quantity == 110
        await executor.delete_lot(first.entity_id)
        assert product.quantity == 60
        await executor.delete_lot(second.entity_id)
        assert product.lots == []
        assert product.quantity == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -3])
    async def test_non_positive_lot_quantity_is_rejected(
        self, local_session: InventorySession, quantity: float
    ) -> None:
        """Lots must hold a positive quantity."""
        product = local_session.products[0]
        with pytest.raises(ValidationFailure):
            await local_session.executor.create_lot(product.id, quantity, date(2026, 1, 1))
        assert product.lots == []

    @pytest.mark.asyncio
    async def test_same_entity_mutations_are_serialized(self, local_session: InventorySession) -> None:
        """A mutation waits while another holds the entity's lock."""
        product = local_session.products[0]
        lock = local_session.executor.lock_for(EntityType.PRODUCT, product.id)

        await lock.acquire()
        task = asyncio.create_task(local_session.executor.update_product_details(product.id, name="Later"))
        await asyncio.sleep(0)
        assert product.name == "Alade"

        lock.release()
        outcome = await task
        assert outcome.committed
        assert product.name == "Later"

    @pytest.mark.asyncio
    async def test_other_entities_are_not_blocked(self, local_session: InventorySession) -> None:
        """Holding one product's lock does not block another product."""
        first, second = local_session.products[0], local_session.products[1]
        lock = local_session.executor.lock_for(EntityType.PRODUCT, first.id)

        async with lock:
            outcome = await local_session.executor.update_product_details(second.id, name="Curbix 2")

        assert outcome.committed


class TestConnectedMutations:
    """Executor behaviour against the server of record."""

    @pytest.mark.asyncio
    async def test_update_failure_rolls_back(
        self, connected_session: InventorySession, server_state: FakeServerState
    ) -> None:
        """A network error restores the prior name and records nothing."""
        product_id = server_state.add_product("Kasumin", "L", 50)
        await connected_session.start()
        server_state.network_errors.add(("PUT", "/api/products/"))

        outcome = await connected_session.executor.update_product_details(product_id, name="Kasumin Pro")

        assert outcome.status == MutationStatus.ROLLED_BACK
        assert outcome.record is None
        assert connected_session.state.find_product(product_id).name == "Kasumin"  # type: ignore[union-attr]
        assert connected_session.state.history_records == []
        errors = [n for n in connected_session.notices.notices if n.level == NoticeLevel.ERROR]
        assert len(errors) == 1
        assert "Kasumin" in errors[0].message

    @pytest.mark.asyncio
    async def test_failed_product_removal_reinserts_at_index(
        self, connected_session: InventorySession, server_state: FakeServerState
    ) -> None:
        """A rolled-back removal puts the product back where it was."""
        ids = [server_state.add_product(name, "L", 1) for name in ("A", "B", "C")]
        await connected_session.start()
        server_state.server_errors.add(("DELETE", "/api/products/"))

        outcome = await connected_session.executor.remove_product(ids[1])

        assert not outcome.committed
        assert outcome.error is not None
        assert [p.id for p in connected_session.products] == ids

    @pytest.mark.asyncio
    async def test_failed_lot_deletion_reinserts_at_index(
        self, connected_session: InventorySession, server_state: FakeServerState
    ) -> None:
        """A rolled-back lot deletion keeps lot order and quantity."""
        product_id = server_state.add_product("Q", "L", lots=[50, 70, 30])
        await connected_session.start()
        product = connected_session.state.find_product(product_id)
        assert product is not None
        lot_ids = [lot.id for lot in product.lots]
        server_state.network_errors.add(("DELETE", "/api/lotes/"))

        outcome = await connected_session.executor.delete_lot(lot_ids[0])

        assert outcome.status == MutationStatus.ROLLED_BACK
        assert [lot.id for lot in product.lots] == lot_ids
        assert product.quantity == 150

    @pytest.mark.asyncio
    async def test_failed_first_lot_restores_stored_quantity(
        self, connected_session: InventorySession, server_state: FakeServerState
    ) -> None:
        """Rolling back a product's only lot brings back its scalar quantity."""
        product_id = server_state.add_product("Priori", "L", 33)
        await connected_session.start()
        server_state.server_errors.add(("POST", f"/api/products/{product_id}/lotes"))

        outcome = await connected_session.executor.create_lot(product_id, 10, date(2026, 1, 1))

        product = connected_session.state.find_product(product_id)
        assert not outcome.committed
        assert product is not None
        assert product.lots == []
        assert product.quantity == 33

    @pytest.mark.asyncio
    async def test_commit_merges_server_snapshot(
        self, connected_session: InventorySession, server_state: FakeServerState
    ) -> None:
        """The server's ids replace the optimistic ones."""
        product_id = server_state.add_product("Q", "L", lots=[50])
        await connected_session.start()

        outcome = await connected_session.executor.create_lot(product_id, 30, date(2026, 5, 1), batch_id="b-7")

        server_lot_ids = [lot["id"] for lot in server_state.products[product_id]["lotes"]]
        product = connected_session.state.find_product(product_id)
        assert product is not None
        assert outcome.entity_id in server_lot_ids
        assert [lot.id for lot in product.lots] == server_lot_ids
        assert product.quantity == server_state.products[product_id]["quantity"] == 80

    @pytest.mark.asyncio
    async def test_batch_id_is_sent_as_header(
        self, connected_session: InventorySession, server_state: FakeServerState
    ) -> None:
        """The batch id travels in X-Operation-Batch-ID."""
        await connected_session.start()

        await connected_session.executor.add_product("Tordon", "L", 5, batch_id="batch-42")

        assert ("POST", "/api/products", "batch-42") in server_state.requests
        assert server_state.history[-1]["batchId"] == "batch-42"


class TestMirrorFailures:
    """Storage errors while saving the mirror."""

    @pytest.mark.asyncio
    async def test_connected_cache_error_keeps_commit(
        self, connected_session: InventorySession, server_state: FakeServerState, mocker: MockerFixture
    ) -> None:
        """The server commit stands when the connected cache cannot be written."""
        await connected_session.start()
        mocker.patch.object(connected_session.context.mirror, "save", side_effect=SQLAlchemyError("disk I/O error"))

        outcome = await connected_session.executor.add_product("Tordon", "L", 5)

        assert outcome.committed
        assert outcome.record is not None
        assert [p["name"] for p in server_state.products.values()] == ["Tordon"]
        assert [p.name for p in connected_session.products] == ["Tordon"]

    @pytest.mark.asyncio
    async def test_local_storage_error_propagates(
        self, local_session: InventorySession, mocker: MockerFixture
    ) -> None:
        """In local mode the mirror is the source of truth, so errors surface."""
        mocker.patch.object(local_session.context.mirror, "save", side_effect=SQLAlchemyError("disk I/O error"))

        with pytest.raises(SQLAlchemyError):
            await local_session.executor.add_product("Tordon", "L", 5)
