from __future__ import annotations

import asyncio
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path

import fakeredis
import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai.frameworks import AnalysisFramework  # noqa: E402
from ai.providers import ProviderAuthError, ProviderUnavailableError  # noqa: E402
from db.models import CheckInRunEvent  # noqa: E402
from services.checkin_content import (  # noqa: E402
    FeaturedConnection,
    GeneratedContent,
    build_generation_context,
    generate_check_in_content,
    parse_connections,
    split_lines,
)
from services.checkin_dispatch import PROCESS_PATH, DispatchError, HttpDispatcher, local_dispatcher  # noqa: E402
from services.checkin_service import (  # noqa: E402
    CheckInProcessingError,
    create_subscription,
    process_subscription,
    trigger_due_processing,
)
from services.email_service import render_check_in_email, render_test_email  # noqa: E402
from services.subscription_models import is_check_in_due  # noqa: E402
from services.subscription_store import SubscriptionNotFoundError, SubscriptionStore  # noqa: E402
from utils.encryption import encrypt_securely  # noqa: E402
from fakes import FakeMailer, FakeProvider, FlakyProvider, new_session_factory  # noqa: E402


KEY = os.urandom(32)
CREATED = datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc)
RUN_AT = datetime(2025, 2, 1, 6, 0, tzinfo=timezone.utc)

ANSWERS = {
    "responses": {
        "pastYear": {"accomplishments": {"biggest": "Ran a marathon"}, "challenges": "Work stress"},
        "yearAhead": {"dreamBig": "Learn piano", "magicalTriplets": {"achieveMost": ["Piano"]}},
    }
}


async def _seed(store: SubscriptionStore, *, frameworks=("pattern",), depth=None, email="a@example.com"):
    return await create_subscription(
        store,
        email=email,
        frequency="monthly",
        frameworks=list(frameworks),
        responses=encrypt_securely(ANSWERS, KEY),
        analysis_depth=depth,
        now=CREATED,
    )


def _runs(session_factory) -> list[CheckInRunEvent]:
    db = session_factory()
    try:
        return db.query(CheckInRunEvent).order_by(CheckInRunEvent.id).all()
    finally:
        db.close()


def test_successful_cycle_sends_email_and_reschedules():
    session_factory = new_session_factory()
    provider = FakeProvider()
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        outcome = await process_subscription(
            sub.id, store=store, key=KEY, provider=provider, mailer=mailer, now=RUN_AT,
            session_factory=session_factory,
        )
        return outcome, await store.get(sub.id), await store.acquire_lease(sub.id, 60)

    outcome, stored, lease_free = asyncio.run(_run())
    assert outcome.status == "succeeded"
    assert outcome.next_check_in == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert outcome.processing_time_ms >= 0
    assert stored.last_check_in == RUN_AT
    assert stored.last_content_generation == RUN_AT
    assert stored.next_check_in == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert lease_free is True

    assert len(mailer.sent) == 1
    _, content = mailer.sent[0]
    assert content.framework is AnalysisFramework.PATTERN
    assert content.insights == ["First", "Second", "Third"]
    assert content.follow_up_questions == ["First", "Second"]
    assert content.analyses == {}
    assert len(provider.calls) == 2
    assert "Ran a marathon" in provider.calls[0]["prompt"]

    runs = _runs(session_factory)
    assert [r.status for r in runs] == ["succeeded"]


def test_decryption_failure_leaves_subscription_due():
    session_factory = new_session_factory()
    provider = FakeProvider()
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        with pytest.raises(CheckInProcessingError) as excinfo:
            await process_subscription(
                sub.id, store=store, key=os.urandom(32), provider=provider, mailer=mailer, now=RUN_AT,
                session_factory=session_factory,
            )
        return excinfo.value, await store.get(sub.id), await store.acquire_lease(sub.id, 60)

    error, stored, lease_free = asyncio.run(_run())
    assert error.kind == "decryption"
    assert str(error) == "Secure decryption failed"
    assert provider.calls == []
    assert mailer.sent == []
    assert stored.last_check_in is None
    assert is_check_in_due(stored, RUN_AT)
    assert lease_free is True
    assert [(r.status, r.error_kind) for r in _runs(session_factory)] == [("failed", "decryption")]


def test_generation_failure_after_retries_leaves_subscription_due():
    provider = FakeProvider(fail_with=ProviderUnavailableError("upstream 503", 503))
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        with pytest.raises(CheckInProcessingError) as excinfo:
            await process_subscription(
                sub.id, store=store, key=KEY, provider=provider, mailer=mailer, now=RUN_AT,
                session_factory=None,
            )
        return excinfo.value, await store.get(sub.id)

    error, stored = asyncio.run(_run())
    assert error.kind == "generation"
    assert mailer.sent == []
    # retried before giving up
    assert len(provider.calls) >= 3
    assert stored.next_check_in == datetime(2025, 2, 1, tzinfo=timezone.utc)
    assert is_check_in_due(stored, RUN_AT)


def test_transient_generation_error_recovers_on_retry():
    provider = FlakyProvider(failures=1)
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        return await process_subscription(
            sub.id, store=store, key=KEY, provider=provider, mailer=mailer, now=RUN_AT, session_factory=None,
        )

    assert asyncio.run(_run()).status == "succeeded"
    assert len(mailer.sent) == 1


def test_email_failure_leaves_subscription_due():
    session_factory = new_session_factory()
    mailer = FakeMailer(fail=True)

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        with pytest.raises(CheckInProcessingError) as excinfo:
            await process_subscription(
                sub.id, store=store, key=KEY, provider=FakeProvider(), mailer=mailer, now=RUN_AT,
                session_factory=session_factory,
            )
        return excinfo.value, await store.get(sub.id)

    error, stored = asyncio.run(_run())
    assert error.kind == "email"
    assert stored.last_check_in is None
    assert stored.last_content_generation is None
    assert is_check_in_due(stored, RUN_AT)
    assert _runs(session_factory)[0].error_kind == "email"


def test_unknown_subscription_raises_not_found():
    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        await process_subscription(
            "missing", store=store, key=KEY, provider=FakeProvider(), mailer=FakeMailer(), now=RUN_AT,
            session_factory=None,
        )

    with pytest.raises(SubscriptionNotFoundError):
        asyncio.run(_run())


def test_not_due_subscription_is_skipped():
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        return await process_subscription(
            sub.id, store=store, key=KEY, provider=FakeProvider(), mailer=mailer,
            now=datetime(2025, 1, 20, tzinfo=timezone.utc), session_factory=None,
        )

    outcome = asyncio.run(_run())
    assert outcome.status == "skipped"
    assert outcome.reason == "not_due"
    assert mailer.sent == []


def test_held_lease_skips_processing():
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        await store.acquire_lease(sub.id, 60)
        return await process_subscription(
            sub.id, store=store, key=KEY, provider=FakeProvider(), mailer=mailer, now=RUN_AT,
            session_factory=None,
        )

    outcome = asyncio.run(_run())
    assert outcome.status == "skipped"
    assert outcome.reason == "in_progress"
    assert mailer.sent == []


def test_trigger_processes_due_once_and_is_idempotent():
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        for i in range(3):
            await _seed(store, email=f"user{i}@example.com")

        async def dispatch(subscription_id: str):
            return await process_subscription(
                subscription_id, store=store, key=KEY, provider=FakeProvider(), mailer=mailer, now=RUN_AT,
                session_factory=None,
            )

        first = await trigger_due_processing(store, dispatch, now=RUN_AT)
        second = await trigger_due_processing(store, dispatch, now=RUN_AT)
        return first, second

    first, second = asyncio.run(_run())
    assert first.as_dict() == {"total": 3, "succeeded": 3, "failed": 0, "skipped": 0}
    assert second.as_dict() == {"total": 0, "succeeded": 0, "failed": 0, "skipped": 0}
    assert len(mailer.sent) == 3


def test_trigger_isolates_failures():
    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        good = await _seed(store, email="good@example.com")
        bad = await _seed(store, email="bad@example.com")

        async def dispatch(subscription_id: str):
            mailer = FakeMailer(fail=subscription_id == bad.id)
            return await process_subscription(
                subscription_id, store=store, key=KEY, provider=FakeProvider(), mailer=mailer, now=RUN_AT,
                session_factory=None,
            )

        summary = await trigger_due_processing(store, dispatch, now=RUN_AT)
        return summary, await store.get(good.id), await store.get(bad.id)

    summary, good, bad = asyncio.run(_run())
    assert summary.as_dict() == {"total": 2, "succeeded": 1, "failed": 1, "skipped": 0}
    assert good.last_check_in == RUN_AT
    assert bad.last_check_in is None


def test_local_dispatcher_runs_pipeline():
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store, frameworks=("growth",))
        dispatch = local_dispatcher(store=store, key=KEY, provider=FakeProvider(), mailer=mailer)
        return await dispatch(sub.id)

    # no explicit clock: the seeded subscription is long overdue
    assert asyncio.run(_run()).status == "succeeded"
    assert mailer.sent[0][1].framework is AnalysisFramework.GROWTH


def test_comprehensive_depth_adds_long_form_per_framework():
    provider = FakeProvider(reply="- Insight one\n- Insight two\n- Insight three")

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store, frameworks=("tarot", "custom", "quest"), depth="comprehensive")
        context = build_generation_context(sub, ANSWERS)
        return await generate_check_in_content(context, provider)

    content = asyncio.run(_run())
    assert content.framework is AnalysisFramework.TAROT
    assert set(content.analyses) == {"tarot", "quest"}
    assert content.insights == ["Insight one", "Insight two", "Insight three"]
    assert len(provider.calls) == 4


def test_maintenance_depth_trims_lists():
    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store, depth="maintenance")
        return await generate_check_in_content(build_generation_context(sub, ANSWERS), FakeProvider())

    content = asyncio.run(_run())
    assert content.insights == ["First"]
    assert content.follow_up_questions == ["First"]


def test_auth_error_is_not_retried():
    provider = FakeProvider(fail_with=ProviderAuthError("bad key", 401))

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        await generate_check_in_content(build_generation_context(sub, ANSWERS), provider)

    with pytest.raises(ProviderAuthError):
        asyncio.run(_run())
    # one attempt per prompt at most
    assert 1 <= len(provider.calls) <= 2


def test_split_lines_strips_list_markers():
    text = "1. One\n\n2) Two\n- Three\n* Four\n## Five"
    assert split_lines(text) == ["One", "Two", "Three", "Four", "Five"]
    assert split_lines(text, 2) == ["One", "Two"]


def test_check_in_email_escapes_content_and_links_settings():
    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        return await _seed(store, frameworks=("hero",), email="a+b@example.com")

    sub = asyncio.run(_run())
    content = GeneratedContent(
        framework=AnalysisFramework.HERO,
        insights=["<b>bold</b> move"],
        follow_up_questions=["What next?"],
    )
    email = render_check_in_email(sub, content, "https://yearcompass.example/")
    assert email.subject == "Your Hero Journey Check-In"
    assert "&lt;b&gt;bold&lt;/b&gt;" in email.html
    assert "<b>bold</b>" not in email.html
    assert "https://yearcompass.example/settings?email=a%2Bb%40example.com" in email.text
    assert "1. What next?" in email.text


def test_http_dispatcher_posts_subscription_id_with_bearer():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if b"reject" in request.content:
            return httpx.Response(500, json={"success": False, "error": "Processing failed"})
        return httpx.Response(200, json={"success": True, "status": "succeeded"})

    dispatcher = HttpDispatcher("https://worker.example/", "s3cret-s3cret-s3cret", transport=httpx.MockTransport(handler))

    async def _run():
        ok = await dispatcher("sub-ok")
        with pytest.raises(DispatchError) as excinfo:
            await dispatcher("reject-me")
        return ok, excinfo.value

    ok, error = asyncio.run(_run())
    assert ok["status"] == "succeeded"
    assert error.kind == "http_500"
    assert seen[0].url == httpx.URL(f"https://worker.example{PROCESS_PATH}")
    assert seen[0].headers["authorization"] == "Bearer s3cret-s3cret-s3cret"


class _GatedLeaseStore(SubscriptionStore):
    """Parks acquire_lease until the gate opens so another worker can finish first."""

    def __init__(self, redis_client, gate: asyncio.Event):
        super().__init__(redis_client)
        self.gate = gate
        self.waiting = asyncio.Event()

    async def acquire_lease(self, subscription_id: str, ttl_seconds: int) -> bool:
        self.waiting.set()
        await self.gate.wait()
        return await super().acquire_lease(subscription_id, ttl_seconds)


class _FailingRescheduleStore(SubscriptionStore):
    async def record_check_in(self, subscription_id, at, next_check_in) -> None:
        raise RedisConnectionError("connection reset")


class _ScriptedProvider(FakeProvider):
    """Replies per prompt: the first marker found in the prompt picks the reply."""

    def __init__(self, replies: dict[str, str], **kwargs):
        super().__init__(**kwargs)
        self.replies = replies

    async def generate(self, prompt: str, *, system: str = "", model: str | None = None) -> dict:
        result = await super().generate(prompt, system=system, model=model)
        for marker, reply in self.replies.items():
            if marker in prompt:
                result["content"] = reply
                break
        return result


class _InsightsFailProvider(FakeProvider):
    """Insights fail at once with a bad key; every other prompt is slow."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.completed: list[str] = []

    async def generate(self, prompt: str, *, system: str = "", model: str | None = None) -> dict:
        self.calls.append({"prompt": prompt, "system": system})
        if "insights" in prompt:
            raise ProviderAuthError("bad key", 401)
        await asyncio.sleep(0.2)
        self.completed.append(prompt)
        return {"content": self.reply, "tokens_in": 10, "tokens_out": 20, "model": self.get_model()}


def test_worker_rechecks_due_state_after_taking_the_lease():
    session_factory = new_session_factory()
    mailer = FakeMailer()

    async def _run():
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
        gate = asyncio.Event()
        fast = SubscriptionStore(client)
        slow = _GatedLeaseStore(client, gate)
        sub = await _seed(fast)

        late = asyncio.ensure_future(
            process_subscription(
                sub.id, store=slow, key=KEY, provider=FakeProvider(), mailer=mailer, now=RUN_AT,
                session_factory=session_factory,
            )
        )
        # the slow worker has read the subscription as due and is parked before the lease
        await slow.waiting.wait()
        first = await process_subscription(
            sub.id, store=fast, key=KEY, provider=FakeProvider(), mailer=mailer, now=RUN_AT,
            session_factory=session_factory,
        )
        gate.set()
        second = await late
        return first, second, await fast.acquire_lease(sub.id, 60)

    first, second, lease_free = asyncio.run(_run())
    assert first.status == "succeeded"
    assert second.status == "skipped"
    assert second.reason == "not_due"
    assert second.next_check_in == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert len(mailer.sent) == 1
    assert lease_free is True
    assert [r.status for r in _runs(session_factory)] == ["succeeded", "skipped"]


def test_trigger_counts_lease_held_subscription_as_skipped():
    mailer = FakeMailer()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        await store.acquire_lease(sub.id, 60)

        async def dispatch(subscription_id: str):
            return await process_subscription(
                subscription_id, store=store, key=KEY, provider=FakeProvider(), mailer=mailer, now=RUN_AT,
                session_factory=None,
            )

        return await trigger_due_processing(store, dispatch, now=RUN_AT)

    summary = asyncio.run(_run())
    assert summary.as_dict() == {"total": 1, "succeeded": 0, "failed": 0, "skipped": 1}
    assert mailer.sent == []


def test_trigger_reads_status_from_worker_responses():
    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        skipped = await _seed(store, email="busy@example.com")
        await _seed(store, email="done@example.com")

        async def dispatch(subscription_id: str):
            status = "skipped" if subscription_id == skipped.id else "succeeded"
            return {"success": True, "status": status}

        return await trigger_due_processing(store, dispatch, now=RUN_AT)

    summary = asyncio.run(_run())
    assert summary.as_dict() == {"total": 2, "succeeded": 1, "failed": 0, "skipped": 1}


def test_run_audit_is_written_off_the_event_loop_thread():
    base_factory = new_session_factory()
    audit_threads = []

    def session_factory():
        audit_threads.append(threading.get_ident())
        return base_factory()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store)
        return await process_subscription(
            sub.id, store=store, key=KEY, provider=FakeProvider(), mailer=FakeMailer(), now=RUN_AT,
            session_factory=session_factory,
        )

    assert asyncio.run(_run()).status == "succeeded"
    assert len(audit_threads) == 1
    assert audit_threads[0] != threading.get_ident()
    assert [r.status for r in _runs(base_factory)] == ["succeeded"]


def test_reschedule_failure_is_reported_as_storage():
    session_factory = new_session_factory()
    mailer = FakeMailer()

    async def _run():
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
        sub = await _seed(SubscriptionStore(client))
        store = _FailingRescheduleStore(client)
        with pytest.raises(CheckInProcessingError) as excinfo:
            await process_subscription(
                sub.id, store=store, key=KEY, provider=FakeProvider(), mailer=mailer, now=RUN_AT,
                session_factory=session_factory,
            )
        return excinfo.value, await store.get(sub.id), await store.acquire_lease(sub.id, 60)

    error, stored, lease_free = asyncio.run(_run())
    assert error.kind == "storage"
    assert stored.last_check_in is None
    assert is_check_in_due(stored, RUN_AT) is True
    assert lease_free is True
    assert [(r.status, r.error_kind) for r in _runs(session_factory)] == [("failed", "storage")]


def test_failed_generation_cancels_the_other_calls():
    provider = _InsightsFailProvider()

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store, frameworks=("pattern", "growth"), depth="comprehensive")
        with pytest.raises(ProviderAuthError):
            await generate_check_in_content(build_generation_context(sub, ANSWERS), provider)
        # longer than any sibling would take to finish on its own
        await asyncio.sleep(0.3)

    asyncio.run(_run())
    assert len(provider.calls) >= 1
    assert provider.completed == []


def test_connections_framework_adds_featured_connections():
    provider = _ScriptedProvider(
        {
            "conversation starter": (
                "1. Sam | Helped with the move | Call this week | How is the new flat?\n"
                "2. Priya | Running partner | Plan a long run | Up for a spring race?\n"
                "Some stray commentary\n"
                "3. Alex | Old colleague | Send a note |"
            ),
        }
    )

    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        sub = await _seed(store, frameworks=("pattern", "connections"))
        return await generate_check_in_content(build_generation_context(sub, ANSWERS), provider)

    content = asyncio.run(_run())
    assert content.featured_connections == [
        FeaturedConnection("Sam", "Helped with the move", "Call this week", "How is the new flat?"),
        FeaturedConnection("Priya", "Running partner", "Plan a long run", "Up for a spring race?"),
    ]
    assert content.insights == ["First", "Second", "Third"]
    assert len(provider.calls) == 3


def test_parse_connections_respects_limit():
    text = "Sam | a | b | c\nPriya | d | e | f"
    assert [c.name for c in parse_connections(text, 1)] == ["Sam"]
    assert parse_connections("no pipes here") == []


def test_check_in_email_lists_featured_connections():
    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        return await _seed(store, frameworks=("connections",))

    sub = asyncio.run(_run())
    content = GeneratedContent(
        framework=AnalysisFramework.CONNECTIONS,
        insights=["Reach out more"],
        follow_up_questions=["Who did you miss?"],
        featured_connections=[
            FeaturedConnection("<Sam>", "Helped with the move", "Call this week", "How is the new flat?"),
        ],
    )
    email = render_check_in_email(sub, content, "https://yearcompass.example")
    assert "Featured Connections for Today" in email.html
    assert "&lt;Sam&gt;" in email.html
    assert "<Sam>" not in email.html
    assert "Conversation Starter:</strong> How is the new flat?" in email.html
    assert "These connections were selected for your monthly check-in." in email.html
    assert "  Suggested Action: Call this week" in email.text


def test_check_in_email_omits_connections_when_none():
    async def _run():
        store = SubscriptionStore(fakeredis.FakeAsyncRedis(decode_responses=True))
        return await _seed(store)

    content = GeneratedContent(framework=AnalysisFramework.PATTERN, insights=["One"], follow_up_questions=["Two"])
    email = render_check_in_email(asyncio.run(_run()), content, "https://yearcompass.example")
    assert "Featured Connections" not in email.html
    assert "Featured Connections" not in email.text


def test_delivery_check_email_content():
    email = render_test_email()
    assert email.subject == "Test Email"
    assert "Verifying email delivery system" in email.html
    assert "Verifying email delivery system" in email.text
