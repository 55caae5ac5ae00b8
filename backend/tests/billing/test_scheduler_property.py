"""Property-based tests for the subscription scheduler.

Tests that:
- Every due active subscription is processed once per run
- One subscription failing does not stop the others
- Re-running the scheduler creates no duplicate invoices
- Dunning runs after generation and is counted in the summary
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone

from hypothesis import given, settings, strategies as st
import pytest

from app.modules.billing.generator import InvoiceGenerator
from app.modules.billing.lifecycle import SubscriptionLifecycle
from app.modules.billing.models import SubscriptionStatus
from app.modules.billing.scheduler import SchedulerSummary, SubscriptionScheduler
from app.modules.billing.exceptions import PaymentLinkError
from fakes import (
    FakeInvoiceRepository,
    FakeMerchantRepository,
    FakeNotifier,
    FakeOverrideRepository,
    FakePaymentLinkClient,
    FakeSubscriptionRepository,
    make_invoice,
    make_session,
    make_subscription,
)


UTC = timezone.utc
NOW = datetime(2024, 3, 1, 0, 30, tzinfo=UTC)


class SelectiveLinkClient(FakePaymentLinkClient):
    """Fails link creation for chosen subscriptions only."""

    def __init__(self, fail_for=()):
        super().__init__()
        self.fail_for = set(fail_for)

    async def create(self, request):
        if request.subscription_id in self.fail_for:
            self.requests.append(request)
            raise PaymentLinkError("Payment link service timeout")
        return await super().create(request)


class SchedulerHarness:
    def __init__(self, fail_for=(), lookahead_days: int = 0):
        self.links = SelectiveLinkClient(fail_for)
        self.notifier = FakeNotifier()
        self.invoices = FakeInvoiceRepository()
        self.subscriptions = FakeSubscriptionRepository(invoice_repo=self.invoices)
        self.merchants = FakeMerchantRepository()
        self.overrides = FakeOverrideRepository()
        self.scheduler = SubscriptionScheduler(
            session_factory=self._session,
            generator_factory=self._generator,
            lifecycle_factory=self._lifecycle,
            repository_factory=lambda session: self.subscriptions,
            concurrency=3,
            lookahead_days=lookahead_days,
        )

    @asynccontextmanager
    async def _session(self):
        yield make_session()

    def _generator(self, session):
        return InvoiceGenerator(
            session,
            payment_links=self.links,
            notifier=self.notifier,
            subscription_repo=self.subscriptions,
            invoice_repo=self.invoices,
            merchant_repo=self.merchants,
            override_repo=self.overrides,
        )

    def _lifecycle(self, session):
        return SubscriptionLifecycle(
            session,
            subscription_repo=self.subscriptions,
            invoice_repo=self.invoices,
            notifier=self.notifier,
        )

    def add(self, **kwargs):
        return self.subscriptions.add(make_subscription(**kwargs))


class TestSchedulerRun:
    """Tests for a single scheduler pass."""

    @pytest.mark.asyncio
    async def test_processes_only_due_active_subscriptions(self) -> None:
        harness = SchedulerHarness()
        due = [harness.add(anchor=NOW - timedelta(hours=1)) for _ in range(3)]
        harness.add(anchor=NOW + timedelta(days=5))
        harness.add(anchor=NOW - timedelta(hours=1), status=SubscriptionStatus.PAUSED.value)

        summary = await harness.scheduler.run(now=NOW)

        assert isinstance(summary, SchedulerSummary)
        assert summary.processed == 3
        assert summary.created == 3
        assert summary.failed == 0
        assert {invoice.subscription_id for invoice in harness.invoices.invoices} == {s.id for s in due}

    @pytest.mark.asyncio
    async def test_lookahead_collects_but_generator_waits(self) -> None:
        harness = SchedulerHarness(lookahead_days=7)
        harness.add(anchor=NOW + timedelta(days=5))
        harness.add(anchor=NOW + timedelta(days=5), generate_days_in_advance=7)

        summary = await harness.scheduler.run(now=NOW)

        assert summary.processed == 2
        assert summary.created == 1
        assert summary.skipped == 1

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self) -> None:
        harness = SchedulerHarness()
        failing = make_subscription(anchor=NOW - timedelta(hours=1))
        harness.links.fail_for.add(failing.id)
        harness.subscriptions.add(failing)
        healthy = [harness.add(anchor=NOW - timedelta(hours=1)) for _ in range(2)]

        summary = await harness.scheduler.run(now=NOW)

        assert summary.processed == 3
        assert summary.created == 2
        assert summary.failed == 1
        assert len(summary.errors) == 1
        assert str(failing.id) in summary.errors[0]
        assert failing.next_billing_at == NOW - timedelta(hours=1)
        assert all(s.cycles_completed == 1 for s in healthy)

    @pytest.mark.asyncio
    async def test_dunning_runs_after_generation(self) -> None:
        harness = SchedulerHarness()
        overdue = harness.add(anchor=datetime(2024, 1, 1, tzinfo=UTC), next_billing_at=datetime(2024, 4, 1, tzinfo=UTC))
        harness.invoices.invoices.append(make_invoice(overdue, datetime(2024, 1, 1, tzinfo=UTC), due_date=date(2024, 1, 1)))

        summary = await harness.scheduler.run(now=NOW)

        assert summary.processed == 0
        assert summary.dunning_sent == 1
        assert summary.to_dict()["dunning_sent"] == 1

    @pytest.mark.asyncio
    async def test_summary_serializes(self) -> None:
        harness = SchedulerHarness()
        summary = await harness.scheduler.run(now=NOW)

        data = summary.to_dict()
        assert data["run_at"] == NOW.isoformat()
        assert set(data) == {
            "run_at", "processed", "created", "existing", "skipped",
            "failed", "dunning_sent", "paused", "errors",
        }


class TestSchedulerIdempotency:
    """Repeated runs never double-bill."""

    @given(
        subscription_count=st.integers(min_value=0, max_value=8),
        runs=st.integers(min_value=1, max_value=4),
    )
    @settings(max_examples=50)
    def test_repeated_runs_create_one_invoice_per_cycle(self, subscription_count: int, runs: int) -> None:
        """*For any* number of runs at the same instant, each due cycle SHALL be invoiced once."""
        harness = SchedulerHarness()
        for _ in range(subscription_count):
            harness.add(anchor=NOW - timedelta(days=1))

        async def run():
            return [await harness.scheduler.run(now=NOW) for _ in range(runs)]

        summaries = asyncio.run(run())

        assert len(harness.invoices.invoices) == subscription_count
        assert summaries[0].created == subscription_count
        assert all(summary.created == 0 for summary in summaries[1:])
