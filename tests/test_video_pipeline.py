from decimal import Decimal

import pytest

from billing_db import InsufficientFundsError, get_balance
from video_pipeline import (
    GenerationRequest,
    GenerationValidationError,
    PipelineState,
    Requester,
    UserNotFoundError,
    categorize_error,
    run_generation,
    settle_and_deliver,
)
from video_providers import (
    ProviderAuthError,
    ProviderRateLimitError,
    ProviderResult,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from tests.fakes.providers import FakeProvider


def _req(user_id, **kw):
    data = {
        "prompt": "a cat surfing at sunset",
        "model": "fast",
        "aspectRatio": "9:16",
        "duration": 15,
        "telegram_id": user_id,
        "username": "tester",
        "is_ru": False,
        "bot_name": "neuro_blogger_bot",
    }
    data.update(kw)
    return GenerationRequest.model_validate(data)


@pytest.mark.asyncio
async def test_end_to_end_fast_model_clamps_and_charges(sb, registry, bot, user_id):
    sb.seed_user(user_id, level=3)
    sb.seed_balance(user_id, 100)
    kie = FakeProvider("kie")

    run = await run_generation(_req(user_id), registry=registry, providers=[kie])

    assert run.state == PipelineState.DONE
    assert kie.last_params.duration == 15
    assert run.result.duration == 8
    assert run.result.cost_usd == Decimal("0.40")
    assert run.stars == 38
    assert get_balance(user_id) == 62

    assert len(bot.videos) == 1
    chat_id, url, caption = bot.videos[0]
    assert chat_id == user_id
    assert url == "https://cdn.example.com/video.mp4"
    assert "8s" in caption
    assert "veo3_fast" in caption

    assert sb.rows("users")[0]["level"] == 4
    assert sb.rows("assets")[0]["url"] == url


@pytest.mark.asyncio
async def test_unhealthy_primary_is_never_asked_to_generate(sb, registry, bot, user_id):
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 1000)
    primary = FakeProvider("kie", healthy=False)
    backup = FakeProvider("vertex")

    run = await run_generation(_req(user_id), registry=registry, providers=[primary, backup])

    assert run.state == PipelineState.DONE
    assert primary.health_calls == 1
    assert primary.generate_calls == 0
    assert backup.generate_calls == 1
    assert run.result.provider == "vertex"
    assert any("backup" in t for t in bot.texts())


@pytest.mark.asyncio
async def test_timeout_triggers_fallback(sb, registry, user_id):
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 1000)
    slow = FakeProvider("kie", delay=1.0)
    backup = FakeProvider("vertex")

    run = await run_generation(_req(user_id), registry=registry, providers=[slow, backup], timeout=0.05)

    assert run.state == PipelineState.DONE
    assert slow.generate_calls == 1
    assert backup.generate_calls == 1


@pytest.mark.asyncio
async def test_deferred_job_persists_task_without_charging(sb, registry, bot, user_id):
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 100)
    kie = FakeProvider("kie", deferred_task_id="kie-task-77")

    run = await run_generation(_req(user_id), registry=registry, providers=[kie])

    assert run.state == PipelineState.DEFERRED
    assert run.task_id == "kie-task-77"
    task = sb.rows("video_tasks")[0]
    assert task["status"] == "processing"
    assert task["telegram_id"] == str(user_id)
    assert task["metadata"]["duration"] == 8
    assert task["metadata"]["estimated_cost"] == "0.40"
    assert sb.outcomes(user_id) == []
    assert get_balance(user_id) == 100
    assert any("kie-task-77" in t for t in bot.texts())


@pytest.mark.asyncio
async def test_insufficient_balance_stops_before_any_provider_call(sb, registry, bot, user_id):
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 10)
    kie = FakeProvider("kie")

    run = await run_generation(_req(user_id), registry=registry, providers=[kie])

    assert run.state == PipelineState.FAILED
    assert isinstance(run.error, InsufficientFundsError)
    assert kie.health_calls == 0
    assert kie.generate_calls == 0
    assert any("38" in t for t in bot.texts())


@pytest.mark.asyncio
async def test_unknown_user_is_told_to_start(sb, registry, bot, user_id):
    kie = FakeProvider("kie")

    run = await run_generation(_req(user_id), registry=registry, providers=[kie])

    assert run.state == PipelineState.FAILED
    assert isinstance(run.error, UserNotFoundError)
    assert kie.generate_calls == 0
    assert any("/start" in t for t in bot.texts())


@pytest.mark.asyncio
async def test_unknown_bot_aborts_silently(sb, registry, bot, user_id):
    sb.seed_user(user_id)
    kie = FakeProvider("kie")

    run = await run_generation(_req(user_id, bot_name="ghost_bot"), registry=registry, providers=[kie])

    assert run.state == PipelineState.FAILED
    assert kie.generate_calls == 0
    assert bot.messages == []


@pytest.mark.asyncio
async def test_fallback_without_square_support_is_skipped(sb, registry, bot, user_id):
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 1000)
    primary = FakeProvider("kie", error=ProviderUnavailableError("down"))
    backup = FakeProvider("vertex")

    run = await run_generation(_req(user_id, aspectRatio="1:1"), registry=registry, providers=[primary, backup])

    assert run.state == PipelineState.FAILED
    assert primary.generate_calls == 1
    assert backup.health_calls == 0
    assert backup.generate_calls == 0
    assert sb.outcomes(user_id) == []


@pytest.mark.asyncio
async def test_primary_without_aspect_support_is_rejected_up_front(sb, registry, user_id):
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 1000)
    vertex_first = FakeProvider("vertex")

    run = await run_generation(_req(user_id, aspectRatio="1:1"), registry=registry, providers=[vertex_first])

    assert run.state == PipelineState.FAILED
    assert isinstance(run.error, GenerationValidationError)
    assert vertex_first.health_calls == 0


@pytest.mark.asyncio
async def test_failed_video_upload_falls_back_to_link(sb, user_id):
    from bot_registry import BotRegistry
    from tests.fakes.telegram import FakeBot

    sb.seed_user(user_id)
    sb.seed_balance(user_id, 100)
    flaky = FakeBot(fail_video=True)
    reg = BotRegistry({flaky.name: flaky}, default_name=flaky.name)

    run = await run_generation(_req(user_id), registry=reg, providers=[FakeProvider("kie")])

    assert run.state == PipelineState.DONE
    assert run.delivered_via == "link"
    assert flaky.videos == []
    assert any("https://cdn.example.com/video.mp4" in t for t in flaky.texts())
    assert get_balance(user_id) == 62


@pytest.mark.asyncio
async def test_all_providers_failing_notifies_user_and_admins(sb, registry, bot, user_id, monkeypatch):
    monkeypatch.setenv("ADMIN_IDS", "999")
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 1000)
    primary = FakeProvider("kie", error=ProviderAuthError("bad key"))
    backup = FakeProvider("vertex", healthy=False)

    run = await run_generation(_req(user_id), registry=registry, providers=[primary, backup])

    assert run.state == PipelineState.FAILED
    assert run.error is not None
    user_msgs = [t for chat, t in bot.messages if chat == user_id]
    admin_msgs = [t for chat, t in bot.messages if chat == 999]
    assert any(run.request_id in t for t in user_msgs)
    # the last error is "backup unhealthy", which is not critical
    assert admin_msgs == []
    assert sb.outcomes(user_id) == []


@pytest.mark.asyncio
async def test_auth_failure_on_last_provider_alerts_admins(sb, registry, bot, user_id, monkeypatch):
    monkeypatch.setenv("ADMIN_IDS", "999")
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 1000)
    only = FakeProvider("kie", error=ProviderAuthError("bad key"))

    run = await run_generation(_req(user_id), registry=registry, providers=[only])

    assert run.state == PipelineState.FAILED
    admin_msgs = [t for chat, t in bot.messages if chat == 999]
    assert len(admin_msgs) == 1
    assert "authentication" in admin_msgs[0]


@pytest.mark.asyncio
async def test_settlement_without_funds_does_not_deliver(sb, bot, user_id):
    sb.seed_user(user_id)
    sb.seed_balance(user_id, 5)
    requester = Requester(
        telegram_id=user_id, username="t", bot_name=bot.name, is_ru=True, prompt="p", aspect_ratio="9:16"
    )
    result = ProviderResult(
        video_url="https://cdn.example.com/v.mp4", cost_usd=Decimal("0.40"), provider="kie", model="veo3_fast", duration=8
    )

    run = await settle_and_deliver(requester, result, ref_id="task-x", bot=bot)

    assert run.state == PipelineState.FAILED
    assert bot.videos == []
    assert get_balance(user_id) == 5
    failed = sb.outcomes(user_id, status="FAILED")
    assert len(failed) == 1
    assert failed[0]["metadata"]["video_url"] == "https://cdn.example.com/v.mp4"
    assert any("task-x" in t for t in bot.texts())


@pytest.mark.parametrize(
    "exc,kind,critical",
    [
        (ProviderAuthError("x"), "authentication", True),
        (InsufficientFundsError(telegram_id=1, balance=0, required=5), "insufficient_credits", False),
        (ProviderRateLimitError("x"), "rate_limit", False),
        (UserNotFoundError(1), "user_not_found", False),
        (ProviderUnavailableError("x"), "service_unavailable", False),
        (ProviderTimeoutError("x"), "timeout", False),
        (KeyError("boom"), "unknown", True),
    ],
)
def test_categorize_error(exc, kind, critical):
    cat = categorize_error(exc)
    assert cat.type == kind
    assert cat.critical is critical
