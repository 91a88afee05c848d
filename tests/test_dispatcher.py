"""Tests for the reconciliation dispatcher."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from unittest.mock import MagicMock

import pytest
from vpc_mock import InMemoryClusterStore, MockVpcService, make_cluster_request

from vpc_operator import dispatcher as dispatcher_module
from vpc_operator.config import OperatorConfig
from vpc_operator.dispatcher import Dispatcher, backoff_seconds
from vpc_operator.models import ObjectKey
from vpc_operator.reconciler import ClusterReconciler, OutcomeKind, ReconcileOutcome
from vpc_operator.resource_client import IBMVPCResourceClient
from vpc_operator.store import PersistError

KEY = ObjectKey(namespace="demo", name="c1")


def outcome(kind: OutcomeKind, requeue_after: float | None = None) -> ReconcileOutcome:
    result = ReconcileOutcome(key=str(KEY), kind=kind, requeue_after=requeue_after)
    if kind == OutcomeKind.ERROR:
        result.error = RuntimeError("provider unavailable")
    return result


@pytest.fixture
def fake_reconciler() -> MagicMock:
    reconciler = MagicMock(spec=ClusterReconciler)
    reconciler.reconcile.return_value = outcome(OutcomeKind.DONE)
    return reconciler


@pytest.mark.parametrize(
    ("failures", "expected"),
    [(0, 0.0), (1, 5.0), (2, 10.0), (3, 20.0), (6, 160.0), (7, 300.0), (50, 300.0)],
)
def test_backoff_seconds(failures: int, expected: float) -> None:
    assert backoff_seconds(failures) == expected


class TestQueue:
    @pytest.mark.asyncio
    async def test_duplicate_keys_collapse(
        self, fake_reconciler: MagicMock, store: InMemoryClusterStore, config: OperatorConfig
    ) -> None:
        dispatcher = Dispatcher(fake_reconciler, store, config)

        dispatcher.enqueue(KEY)
        dispatcher.enqueue(KEY)
        dispatcher.enqueue(ObjectKey(namespace="demo", name="c2"))

        assert dispatcher.queue_depth == 2

    @pytest.mark.asyncio
    async def test_process_next_runs_one_pass(
        self, fake_reconciler: MagicMock, store: InMemoryClusterStore, config: OperatorConfig
    ) -> None:
        dispatcher = Dispatcher(fake_reconciler, store, config)
        dispatcher.enqueue(KEY)

        result = await dispatcher.process_next()

        assert result.kind == OutcomeKind.DONE
        fake_reconciler.reconcile.assert_called_once_with(KEY)
        assert dispatcher.queue_depth == 0

    @pytest.mark.asyncio
    async def test_key_changed_during_pass_is_requeued_once(
        self, fake_reconciler: MagicMock, store: InMemoryClusterStore, config: OperatorConfig
    ) -> None:
        """Test that events for an in-flight key wait for the running pass."""
        dispatcher = Dispatcher(fake_reconciler, store, config)
        loop = asyncio.get_running_loop()

        def reconcile(key: ObjectKey) -> ReconcileOutcome:
            loop.call_soon_threadsafe(dispatcher.enqueue, key)
            loop.call_soon_threadsafe(dispatcher.enqueue, key)
            return outcome(OutcomeKind.DONE)

        fake_reconciler.reconcile.side_effect = reconcile
        dispatcher.enqueue(KEY)

        await dispatcher.process_next()

        assert dispatcher.queue_depth == 1


class TestHandleOutcome:
    @pytest.mark.asyncio
    async def test_done_clears_failures(
        self, fake_reconciler: MagicMock, store: InMemoryClusterStore, config: OperatorConfig
    ) -> None:
        dispatcher = Dispatcher(fake_reconciler, store, config)
        dispatcher.handle_outcome(KEY, outcome(OutcomeKind.ERROR))

        dispatcher.handle_outcome(KEY, outcome(OutcomeKind.DONE))

        assert dispatcher.failure_count(KEY) == 0

    @pytest.mark.asyncio
    async def test_immediate_requeue(
        self, fake_reconciler: MagicMock, store: InMemoryClusterStore, config: OperatorConfig
    ) -> None:
        dispatcher = Dispatcher(fake_reconciler, store, config)

        dispatcher.handle_outcome(KEY, outcome(OutcomeKind.REQUEUE, 0.0))

        assert dispatcher.queue_depth == 1
        assert not dispatcher.is_scheduled(KEY)

    @pytest.mark.asyncio
    async def test_delayed_requeue(
        self, fake_reconciler: MagicMock, store: InMemoryClusterStore, config: OperatorConfig
    ) -> None:
        dispatcher = Dispatcher(fake_reconciler, store, config)

        dispatcher.handle_outcome(KEY, outcome(OutcomeKind.REQUEUE, 0.01))

        assert dispatcher.queue_depth == 0
        assert dispatcher.is_scheduled(KEY)
        await asyncio.sleep(0.05)
        assert dispatcher.queue_depth == 1
        assert not dispatcher.is_scheduled(KEY)

    @pytest.mark.asyncio
    async def test_errors_back_off(
        self, fake_reconciler: MagicMock, store: InMemoryClusterStore, config: OperatorConfig
    ) -> None:
        dispatcher = Dispatcher(fake_reconciler, store, config)

        dispatcher.handle_outcome(KEY, outcome(OutcomeKind.ERROR))
        dispatcher.handle_outcome(KEY, outcome(OutcomeKind.ERROR))

        assert dispatcher.failure_count(KEY) == 2
        assert dispatcher.is_scheduled(KEY)
        assert dispatcher.queue_depth == 0

        dispatcher.handle_outcome(KEY, outcome(OutcomeKind.REQUEUE, 0.0))
        assert dispatcher.failure_count(KEY) == 0
        assert not dispatcher.is_scheduled(KEY)
        assert dispatcher.queue_depth == 1


class TestResync:
    @pytest.mark.asyncio
    async def test_resync_enqueues_every_object(
        self, fake_reconciler: MagicMock, store: InMemoryClusterStore, config: OperatorConfig
    ) -> None:
        store.add(make_cluster_request("c1"))
        store.add(make_cluster_request("c2", owner="c2"))
        dispatcher = Dispatcher(fake_reconciler, store, config)

        assert await dispatcher.resync() == 2
        assert dispatcher.queue_depth == 2

    @pytest.mark.asyncio
    async def test_resync_listing_failure(self, fake_reconciler: MagicMock, config: OperatorConfig) -> None:
        failing_store = MagicMock()
        failing_store.list_keys.side_effect = PersistError("list vpcclusters failed (HTTP 503)")
        dispatcher = Dispatcher(fake_reconciler, failing_store, config)

        assert await dispatcher.resync() == 0
        assert dispatcher.queue_depth == 0


class TestWatch:
    @pytest.mark.asyncio
    async def test_watch_events_are_enqueued(
        self,
        fake_reconciler: MagicMock,
        config: OperatorConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a broken watch stream is re-established."""
        monkeypatch.setattr(dispatcher_module, "WATCH_RETRY_SECONDS", 0)
        attempts = []

        class FlakyWatchStore(InMemoryClusterStore):
            def watch_keys(self) -> Iterator[ObjectKey]:
                attempts.append(1)
                if len(attempts) == 1:
                    raise ConnectionError("watch stream reset")
                yield KEY
                yield ObjectKey(namespace="demo", name="c2")
                dispatcher._stop_watch.set()

        dispatcher = Dispatcher(fake_reconciler, FlakyWatchStore(), config)

        await asyncio.to_thread(dispatcher._watch_forever, asyncio.get_running_loop())
        await asyncio.sleep(0)

        assert len(attempts) == 2
        assert dispatcher.queue_depth == 2


class TestRun:
    @pytest.mark.asyncio
    async def test_run_converges_and_shuts_down(
        self, store: InMemoryClusterStore, service: MockVpcService
    ) -> None:
        config = OperatorConfig(
            iam_endpoint="https://iam.cloud.ibm.com",
            api_key="test-api-key-0123456789",
            service_endpoint="https://us-south.iaas.cloud.ibm.com/v1",
            enable_watch=False,
        )
        reconciler = ClusterReconciler(
            store, config, resource_client_factory=lambda _: IBMVPCResourceClient(service)
        )
        key = store.add(make_cluster_request())
        dispatcher = Dispatcher(reconciler, store, config)

        task = asyncio.create_task(dispatcher.run())
        for _ in range(500):
            if store.peek(key).status.ready:
                break
            await asyncio.sleep(0.01)
        dispatcher.shutdown()
        await asyncio.wait_for(task, timeout=5)

        assert store.peek(key).status.ready is True
        assert service.state.resource_count == 3
