from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from reward_board.jobs.moderation import ModerationHandler
from reward_board.services.producer import ListingProducer
from reward_board.services.repository import PostgresRepository
from reward_board.worker import ModerationWorker

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"
CHANNEL = "moderation"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("RB_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require RB_DATABASE_URL")
    _run(_ensure_schema(url))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_execute(database_url, "truncate table jobs, moderation_events, listings"))


def test_listing_is_moderated_end_to_end(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            producer = ListingProducer(repository, channel=CHANNEL)
            published = await producer.create_listing(_payload("Help find my dog", "Reward for safe return, urgent!"))
            banned = await producer.create_listing(_payload("Pistas", "Recompensa por pistas do sequestro"))
            held = await producer.create_listing(_payload("Celular", "Preciso monitorar e descobrir a senha"))

            assert await repository.list_published_listings(limit=50, offset=0) == []

            processed = await _worker(repository).drain()
            assert processed == 3

            feed = await repository.list_published_listings(limit=50, offset=0)
            assert [row["id"] for row in feed] == [published["id"]]
            assert (await repository.get_listing(banned["id"]))["status"] == "BANNED"
            held_row = await repository.get_listing(held["id"])
            assert held_row["status"] == "PENDING_REVIEW"
            assert held_row["risk_score"] is None

            events = await repository.list_moderation_events(banned["id"])
            assert [event["action"] for event in events] == ["REJECT"]
        finally:
            await repository.close()

    _run(scenario())
    assert _run(_fetchval(database_url, "select count(*) from jobs where status = 'done'")) == 3


def test_redelivered_job_does_not_duplicate_ledger_entries(database_url: str) -> None:
    async def scenario() -> str:
        repository = _repository(database_url)
        try:
            created = await ListingProducer(repository, channel=CHANNEL).create_listing(
                _payload("Chaves", "Molho de chaves azul")
            )
            jobs = await repository.claim_jobs(channel=CHANNEL, worker_id="worker-a", limit=1, lease_seconds=60)
            handler = ModerationHandler(repository)
            first, second = await asyncio.gather(handler.handle(jobs[0]), handler.handle(dict(jobs[0])))
            assert {first["outcome"], second["outcome"]} <= {"approve", "already_moderated", "superseded"}
            return created["id"]
        finally:
            await repository.close()

    listing_id = _run(scenario())
    assert _run(_fetchval(database_url, "select count(*) from moderation_events where listing_id = $1::uuid", listing_id)) == 1
    assert _run(_fetchval(database_url, "select status::text from listings where id = $1::uuid", listing_id)) == "PUBLISHED"


def test_failed_jobs_back_off_and_dead_letter(database_url: str) -> None:
    async def scenario() -> dict[str, Any]:
        repository = _repository(database_url, job_max_attempts=2)
        try:
            await ListingProducer(repository, channel=CHANNEL).create_listing(_payload("Anel", "Anel de prata"))
            job = (await repository.claim_jobs(channel=CHANNEL, worker_id="worker-a", limit=1, lease_seconds=60))[0]
            retried = await repository.fail_job(job["id"], worker_id="worker-a", error_json={"error": "boom"})
            assert retried["status"] == "queued"
            job = (await repository.claim_jobs(channel=CHANNEL, worker_id="worker-a", limit=1, lease_seconds=60))[0]
            dead = await repository.fail_job(job["id"], worker_id="worker-a", error_json={"error": "boom"})
            assert dead["status"] == "dead_letter"
            assert [row["id"] for row in await repository.list_dead_letter_jobs(channel=CHANNEL, limit=10)] == [job["id"]]
            return await repository.requeue_dead_letter_job(job["id"])
        finally:
            await repository.close()

    requeued = _run(scenario())
    assert requeued["status"] == "queued"
    assert requeued["attempt"] == 0


def test_ledger_rejects_updates(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            created = await ListingProducer(repository, channel=CHANNEL).create_listing(_payload("Gato", "Gato preto"))
            await _worker(repository).drain()
        finally:
            await repository.close()

        with pytest.raises(asyncpg.PostgresError):
            await _execute(
                database_url,
                "update moderation_events set reason = 'edited' where listing_id = $1::uuid",
                created["id"],
            )

    _run(scenario())


def test_lapsed_lease_is_requeued_then_dead_lettered_on_last_attempt(database_url: str) -> None:
    async def scenario() -> tuple[str, list[dict[str, Any]]]:
        repository = _repository(database_url, job_max_attempts=2)
        try:
            await ListingProducer(repository, channel=CHANNEL).create_listing(_payload("Carteira", "Carteira marrom"))
            job = (await repository.claim_jobs(channel=CHANNEL, worker_id="worker-a", limit=1, lease_seconds=0))[0]

            assert await repository.requeue_expired_jobs(channel=CHANNEL, limit=10) == 1
            assert await _fetchval(database_url, "select status::text from jobs where id = $1::uuid", job["id"]) == "queued"
            assert await _fetchval(database_url, "select locked_by from jobs where id = $1::uuid", job["id"]) is None

            reclaimed = await repository.claim_jobs(channel=CHANNEL, worker_id="worker-b", limit=1, lease_seconds=0)
            assert [row["attempt"] for row in reclaimed] == [2]
            assert await repository.requeue_expired_jobs(channel=CHANNEL, limit=10) == 1
            return job["id"], await repository.list_dead_letter_jobs(channel=CHANNEL, limit=10)
        finally:
            await repository.close()

    job_id, dead_letters = _run(scenario())
    assert [row["id"] for row in dead_letters] == [job_id]
    assert dead_letters[0]["error_json"] == {"error": "lease expired"}
    assert dead_letters[0]["attempt"] == 2


def test_live_lease_is_left_alone_by_the_reaper(database_url: str) -> None:
    async def scenario() -> int:
        repository = _repository(database_url)
        try:
            await ListingProducer(repository, channel=CHANNEL).create_listing(_payload("Óculos", "Óculos de sol"))
            await repository.claim_jobs(channel=CHANNEL, worker_id="worker-a", limit=1, lease_seconds=300)
            return await repository.requeue_expired_jobs(channel=CHANNEL, limit=10)
        finally:
            await repository.close()

    assert _run(scenario()) == 0
    assert _run(_fetchval(database_url, "select status::text from jobs")) == "claimed"


def test_listing_without_review_job_is_reenqueued_after_grace_period(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            producer = ListingProducer(repository, channel=CHANNEL)
            stranded = await producer.create_listing(_payload("Bicicleta", "Bicicleta azul"))
            fresh = await producer.create_listing(_payload("Patinete", "Patinete vermelho"))
            adjusted = await producer.create_listing(_payload("Celular", "Preciso descobrir a senha"))
            await _execute(database_url, "delete from jobs")
            await _execute(
                database_url,
                "update listings set created_at = now() - interval '10 minutes' where id = any($1::uuid[])",
                [stranded["id"], adjusted["id"]],
            )
            await repository.append_moderation_event(adjusted["id"], action="ADJUST", reason="SENSITIVE:senha")

            assert await repository.enqueue_missing_reviews(channel=CHANNEL, limit=10, grace_seconds=60) == 1
            assert await repository.enqueue_missing_reviews(channel=CHANNEL, limit=10, grace_seconds=60) == 0

            jobs = await repository.claim_jobs(channel=CHANNEL, worker_id="worker-a", limit=10, lease_seconds=60)
            assert [(job["target_id"], job["inputs_json"]) for job in jobs] == [
                (stranded["id"], {"listing_id": stranded["id"]})
            ]
            assert jobs[0]["max_attempts"] == 3

            await ModerationHandler(repository).handle(jobs[0])
            assert (await repository.get_listing(stranded["id"]))["status"] == "PUBLISHED"
            assert (await repository.get_listing(fresh["id"]))["status"] == "PENDING_REVIEW"
        finally:
            await repository.close()

    _run(scenario())


def test_adjust_decision_appends_event_only_while_pending(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            producer = ListingProducer(repository, channel=CHANNEL)
            held = await producer.create_listing(_payload("Celular", "Preciso monitorar e descobrir a senha"))
            published = await producer.create_listing(_payload("Cachorro", "Cachorro caramelo"))
            assert await repository.transition_listing(
                published["id"], from_status="PENDING_REVIEW", to_status="PUBLISHED", risk_score=0
            )

            applied = await repository.apply_moderation_decision(
                held["id"], to_status=None, risk_score=60, action="ADJUST", reason="SENSITIVE:monitorar, SENSITIVE:senha"
            )
            late = await repository.apply_moderation_decision(
                published["id"], to_status=None, risk_score=60, action="ADJUST", reason="SENSITIVE:senha"
            )
            missing = await repository.apply_moderation_decision(
                "00000000-0000-0000-0000-000000000000", to_status=None, risk_score=60, action="ADJUST", reason="x"
            )

            assert (applied, late, missing) == (True, False, False)
            held_row = await repository.get_listing(held["id"])
            assert held_row["status"] == "PENDING_REVIEW"
            assert held_row["risk_score"] is None
            events = await repository.list_moderation_events(held["id"])
            assert [(event["action"], event["reason"]) for event in events] == [
                ("ADJUST", "SENSITIVE:monitorar, SENSITIVE:senha")
            ]
            assert await repository.list_moderation_events(published["id"]) == []
        finally:
            await repository.close()

    _run(scenario())


def test_feed_filters_run_against_postgres(database_url: str) -> None:
    async def scenario() -> None:
        repository = _repository(database_url)
        try:
            producer = ListingProducer(repository, channel=CHANNEL)
            national = await producer.create_listing(_payload("Gato", "Gato preto", category="Animais domésticos"))
            paulista = await producer.create_listing(
                _payload("RG", "Documento perdido", category="documentos", scope="STATE", state="sp")
            )
            carioca = await producer.create_listing(
                _payload("CNH", "Carteira de motorista", category="documentos", scope="STATE", state="RJ")
            )
            campinas = await producer.create_listing(
                _payload(
                    "Chaves",
                    "Chaves do carro",
                    category="chaves",
                    scope="MUNICIPALITY",
                    municipality_code="3509502",
                )
            )
            await producer.create_listing(_payload("Pistas", "Recompensa por pistas do sequestro", category="animais"))
            await _worker(repository).drain()

            by_category = await repository.list_published_listings(limit=50, offset=0, category="  ANIMAIS ")
            by_scope = await repository.list_published_listings(limit=50, offset=0, scope="STATE")
            by_state = await repository.list_published_listings(limit=50, offset=0, scope="STATE", state="sp")
            by_municipality = await repository.list_published_listings(
                limit=50, offset=0, scope="MUNICIPALITY", municipality_code="3509502"
            )
            other_municipality = await repository.list_published_listings(
                limit=50, offset=0, scope="MUNICIPALITY", municipality_code="3550308"
            )
            paged = await repository.list_published_listings(limit=2, offset=1)

            assert [row["id"] for row in by_category] == [national["id"]]
            assert {row["id"] for row in by_scope} == {paulista["id"], carioca["id"]}
            assert [(row["id"], row["state"]) for row in by_state] == [(paulista["id"], "SP")]
            assert [row["id"] for row in by_municipality] == [campinas["id"]]
            assert other_municipality == []
            assert [row["id"] for row in paged] == [carioca["id"], paulista["id"]]
        finally:
            await repository.close()

    _run(scenario())


def _repository(database_url: str, *, job_max_attempts: int = 3) -> PostgresRepository:
    return PostgresRepository(
        database_url=database_url,
        min_pool_size=1,
        max_pool_size=4,
        job_max_attempts=job_max_attempts,
        job_retry_base_seconds=0,
        job_retry_max_seconds=0,
    )


def _worker(repository: PostgresRepository) -> ModerationWorker:
    return ModerationWorker(
        repository,
        ModerationHandler(repository),
        channel=CHANNEL,
        worker_id="integration-worker",
        concurrency=2,
        lease_seconds=60,
        job_timeout_seconds=10.0,
        poll_interval_seconds=0.01,
    )


def _payload(title: str, description: str, **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": title,
        "description": description,
        "category": "achados",
        "amount_minor_units": 25000,
        "deadline": "2030-10-01",
    }
    payload.update(overrides)
    return payload


async def _ensure_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        if await conn.fetchval("select to_regclass('public.listings')") is None:
            await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
    finally:
        await conn.close()


async def _fetchval(database_url: str, query: str, *args: Any) -> Any:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchval(query, *args)
    finally:
        await conn.close()


async def _execute(database_url: str, query: str, *args: Any) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(query, *args)
    finally:
        await conn.close()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)
