import json

import pytest

from browser.locator import Intent
from errors import (
    FatalRecoveryFailure,
    FilterNotApplied,
    InvalidFilter,
    SessionNotReady,
    TransientNetworkError,
)
from recovery import FilterState, SessionStage, load_categories
from conftest import FakeElement


@pytest.mark.asyncio
async def test_start_brings_session_up(orchestrator, launcher, actions):
    assert await orchestrator.start()

    assert launcher.launches == 1
    assert orchestrator.status.stage is SessionStage.RUNNING
    assert orchestrator.status.active
    assert orchestrator.handle.generation == 2
    assert actions.names() == ["navigate_home"]


@pytest.mark.asyncio
async def test_start_fails_on_undismissable_checkpoint(orchestrator, launcher):
    def checkpoint_page(page):
        page.elements[Intent.CHECKPOINT_TEXT] = FakeElement("notice")
        page.elements[Intent.CHECKPOINT_DISMISS] = FakeElement("dismiss")

    launcher.prepare = checkpoint_page

    assert await orchestrator.start() is False
    assert orchestrator.status.stage is SessionStage.FATAL
    assert not orchestrator.status.active
    assert "Checkpoint" in orchestrator.status.last_error


@pytest.mark.asyncio
async def test_operations_rejected_before_start(orchestrator):
    with pytest.raises(SessionNotReady):
        await orchestrator.search("sofa")
    with pytest.raises(SessionNotReady):
        await orchestrator.set_price_filter(10, 20)


@pytest.mark.asyncio
async def test_filter_validation(orchestrator):
    await orchestrator.start()

    with pytest.raises(InvalidFilter):
        await orchestrator.search("   ")
    with pytest.raises(InvalidFilter):
        await orchestrator.select_category("Boats")
    with pytest.raises(InvalidFilter):
        await orchestrator.set_location("Austin", 20, None, -97.74)
    with pytest.raises(InvalidFilter):
        await orchestrator.set_location("Austin", 0, 30.27, -97.74)
    with pytest.raises(InvalidFilter):
        await orchestrator.set_price_filter(None, None)
    with pytest.raises(InvalidFilter):
        await orchestrator.set_price_filter(500, 50)
    with pytest.raises(InvalidFilter):
        await orchestrator.set_price_filter(-1, None)
    with pytest.raises(InvalidFilter):
        await orchestrator.set_year_filter(None, None)
    with pytest.raises(InvalidFilter):
        await orchestrator.set_age_filter(0)
    with pytest.raises(InvalidFilter):
        await orchestrator.set_age_filter(True)
    with pytest.raises(InvalidFilter):
        await orchestrator.set_age_filter(0.5)

    assert orchestrator.filters == FilterState()


@pytest.mark.asyncio
async def test_filter_state_kept_when_page_apply_fails(orchestrator, actions):
    await orchestrator.start()
    actions.results["search"] = False

    with pytest.raises(FilterNotApplied):
        await orchestrator.search("sofa")

    assert orchestrator.filters.search_query == "sofa"


@pytest.mark.asyncio
async def test_year_filter_is_client_side(orchestrator):
    await orchestrator.start()

    applied = await orchestrator.set_year_filter(0, 2020)

    assert applied == {"minYear": None, "maxYear": 2020}
    assert orchestrator.filters.max_year == 2020
    assert orchestrator.status.max_year == 2020
    assert orchestrator.status.year_filter_applied_server_side is False


@pytest.mark.asyncio
async def test_auto_recover_restores_and_replays_filters(orchestrator, launcher, actions):
    await orchestrator.start()
    await orchestrator.select_category("Vehicles")
    await orchestrator.set_location("Austin", 20, 30.27, -97.74)
    await orchestrator.set_price_filter(50, None)
    await orchestrator.search("sofa")
    await orchestrator.set_year_filter(2010, None)
    before = orchestrator.filters.copy()
    actions.calls.clear()

    async with orchestrator.lock:
        assert await orchestrator.auto_recover()

    assert launcher.launches == 2
    assert orchestrator.filters == before
    assert orchestrator.status.recoveries == 1
    assert orchestrator.status.stage is SessionStage.RUNNING
    assert orchestrator.consume_recovered_notice() is True
    assert orchestrator.consume_recovered_notice() is False
    assert actions.calls == [
        ("navigate_home",),
        ("select_category", "Vehicles"),
        ("search", "sofa"),
        ("apply_last_24_hours",),
        ("set_location", "Austin", 20, 30.27, -97.74),
        ("set_price", 50, None),
    ]


@pytest.mark.asyncio
async def test_restore_without_location_skips_date_filter(orchestrator, actions):
    await orchestrator.start()
    actions.calls.clear()

    async with orchestrator.lock:
        restored = await orchestrator.restore_state(FilterState(search_query="lamp"))

    assert restored == ["search"]
    assert actions.names() == ["search"]


@pytest.mark.asyncio
async def test_restore_continues_past_failed_step(orchestrator, actions):
    await orchestrator.start()
    actions.errors["select_category"] = RuntimeError("category menu missing")

    async with orchestrator.lock:
        restored = await orchestrator.restore_state(
            FilterState(selected_category="Vehicles", search_query="lamp")
        )

    assert restored == ["search"]


@pytest.mark.asyncio
async def test_handle_critical_error_recovers_once(orchestrator, launcher):
    notices = []

    async def on_recovered():
        notices.append(True)

    orchestrator.on_recovered = on_recovered
    await orchestrator.start()

    async with orchestrator.lock:
        assert await orchestrator.handle_critical_error("test")

    assert launcher.launches == 2
    assert orchestrator.status.recoveries == 1
    assert notices == [True]


@pytest.mark.asyncio
async def test_handle_critical_error_raises_when_recovery_fails(orchestrator, launcher):
    await orchestrator.start()
    launcher.fail = True

    async with orchestrator.lock:
        with pytest.raises(FatalRecoveryFailure):
            await orchestrator.handle_critical_error("test")

    # One teardown of the original context, no second attempt
    assert len(launcher.closed) == 1
    assert orchestrator.status.stage is SessionStage.FATAL
    assert orchestrator.status.recoveries == 0
    assert not orchestrator.handle.alive


@pytest.mark.asyncio
async def test_critical_error_during_action_recovers_and_reports_transient(orchestrator, launcher, actions):
    await orchestrator.start()
    actions.errors["search"] = RuntimeError("Timeout 30000ms exceeded")

    with pytest.raises(TransientNetworkError):
        await orchestrator.search("sofa")

    assert launcher.launches == 2
    assert orchestrator.status.recoveries == 1
    assert orchestrator.filters.search_query == "sofa"


@pytest.mark.asyncio
async def test_stale_work_fails_after_restart(orchestrator):
    await orchestrator.start()
    token = orchestrator.handle.capture()

    assert await orchestrator.restart_browser()

    with pytest.raises(SessionNotReady):
        orchestrator.handle.ensure_current(token)


@pytest.mark.asyncio
async def test_refresh_restarts_dead_session(orchestrator, launcher):
    await orchestrator.start()
    launcher.pages[0].dead = True

    assert await orchestrator.refresh_page()

    assert launcher.launches == 2
    assert launcher.pages[0].reloads == 0


@pytest.mark.asyncio
async def test_refresh_reloads_live_page(orchestrator, launcher):
    await orchestrator.start()

    assert await orchestrator.refresh_page()

    assert launcher.launches == 1
    assert launcher.pages[0].reloads == 1


@pytest.mark.asyncio
async def test_refresh_recovers_from_navigation_timeout(orchestrator, launcher):
    await orchestrator.start()
    launcher.pages[0].reload_error = RuntimeError("page.reload: Timeout 30000ms exceeded")

    assert await orchestrator.refresh_page()

    assert launcher.launches == 2
    assert orchestrator.status.recoveries == 1


@pytest.mark.asyncio
async def test_scheduled_restart_announces_then_clears_flag(orchestrator, launcher):
    await orchestrator.start()
    seen = []

    async def watching_sleep(seconds):
        seen.append((orchestrator.status.restarting_soon, orchestrator.status.stage))

    orchestrator._sleep = watching_sleep

    assert await orchestrator.scheduled_restart()

    assert seen[0] == (True, SessionStage.SCHEDULED_RESTART_PENDING)
    assert orchestrator.status.restarting_soon is False
    assert orchestrator.status.stage is SessionStage.RUNNING
    assert launcher.launches == 2


@pytest.mark.asyncio
async def test_scheduled_restart_failure(orchestrator, launcher):
    await orchestrator.start()
    launcher.fail = True

    assert await orchestrator.scheduled_restart() is False

    assert orchestrator.status.restarting_soon is False
    assert orchestrator.status.stage is SessionStage.SCHEDULED_RESTART_FAILED


@pytest.mark.asyncio
async def test_scheduled_restart_skipped_without_session(orchestrator, launcher):
    assert await orchestrator.scheduled_restart() is False
    assert launcher.launches == 0


@pytest.mark.asyncio
async def test_close_stops_browser(orchestrator, launcher):
    await orchestrator.start()
    await orchestrator.close()

    assert launcher.stopped
    assert orchestrator.status.stage is SessionStage.STOPPED
    with pytest.raises(SessionNotReady):
        await orchestrator.search("sofa")


@pytest.mark.asyncio
async def test_snapshot_status(orchestrator):
    await orchestrator.start()
    await orchestrator.set_age_filter(90)

    snapshot = orchestrator.snapshot_status()

    assert snapshot["stage"] == "running"
    assert snapshot["generation"] == 2
    assert snapshot["filters"]["max_age_minutes"] == 90


def test_load_categories(tmp_path):
    path = tmp_path / "categories.json"
    path.write_text(json.dumps({"categories": [{"name": "Vehicles", "id": "vehicles"}]}))

    assert load_categories(path) == [{"name": "Vehicles", "id": "vehicles"}]
    assert load_categories(tmp_path / "missing.json") == []

    path.write_text("{not json")
    assert load_categories(path) == []


@pytest.mark.asyncio
async def test_age_filter_accepts_whole_minutes(orchestrator):
    await orchestrator.start()

    assert await orchestrator.set_age_filter(30.0) == 30
    assert orchestrator.filters.max_age_minutes == 30
