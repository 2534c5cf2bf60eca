"""Tests for capability providers and the registry."""

from __future__ import annotations

import asyncio

import pytest

from clawnode.capabilities import (
    CAPABILITY_KINDS,
    CapabilityDescriptor,
    CapabilityProvider,
)


class _OddProvider(CapabilityProvider):
    capability = "teleport"


class TestRegistry:
    def test_empty_registry(self, registry):
        assert registry.screen() is None
        assert registry.accessibility() is None
        assert registry.launcher() is None
        assert registry.descriptors() == [
            CapabilityDescriptor(kind, False) for kind in CAPABILITY_KINDS
        ]
        assert registry.permissions() == {
            "accessibility": False,
            "screen.capture": False,
            "system.launch": False,
        }

    def test_register_and_lookup(self, registry, screen, accessibility, launcher):
        registry.register(screen)
        registry.register(accessibility)
        registry.register(launcher)
        assert registry.screen() is screen
        assert registry.accessibility() is accessibility
        assert registry.launcher() is launcher
        assert registry.get("screen") is screen
        assert all(d.available for d in registry.descriptors())

    def test_descriptor_to_dict(self, registry, screen):
        registry.register(screen)
        assert {"name": "screen", "available": True} in [d.to_dict() for d in registry.descriptors()]

    def test_permissions_follow_registration(self, registry, accessibility):
        registry.register(accessibility)
        assert registry.permissions() == {
            "accessibility": True,
            "screen.capture": False,
            "system.launch": False,
        }

    def test_unknown_kind_rejected(self, registry):
        with pytest.raises(ValueError, match="teleport"):
            registry.register(_OddProvider())

    def test_register_replaces(self, registry, screen):
        from clawnode.capabilities import ScreenProvider

        class OtherScreen(ScreenProvider):
            async def capture(self):
                return None

        other = OtherScreen()
        registry.register(screen)
        registry.register(other)
        assert registry.screen() is other

    def test_deregister_by_kind(self, registry, screen):
        registry.register(screen)
        assert registry.deregister("screen") is True
        assert registry.screen() is None
        assert registry.deregister("screen") is False

    def test_deregister_only_current_provider(self, registry, screen):
        from clawnode.capabilities import ScreenProvider

        class OtherScreen(ScreenProvider):
            async def capture(self):
                return None

        registry.register(screen)
        assert registry.deregister(OtherScreen()) is False
        assert registry.screen() is screen
        assert registry.deregister(screen) is True

    def test_snapshot_not_affected_by_later_writes(self, registry, screen):
        registry.register(screen)
        before = registry.descriptors()
        registry.deregister(screen)
        assert before[1] == CapabilityDescriptor("screen", True)
        assert registry.descriptors()[1] == CapabilityDescriptor("screen", False)


# ── Lifecycle ─────────────────────────────────────────────────────


class TestLifecycle:
    def test_track_follows_start_stop(self, registry, accessibility):
        registry.track(accessibility)
        assert registry.accessibility() is None

        accessibility.start()
        assert accessibility.running
        assert registry.accessibility() is accessibility

        accessibility.stop()
        assert not accessibility.running
        assert registry.accessibility() is None

    def test_track_running_provider(self, registry, screen):
        screen.start()
        registry.track(screen)
        assert registry.screen() is screen

    def test_untrack(self, registry, screen):
        registry.track(screen)
        screen.start()
        registry.untrack(screen)
        assert registry.screen() is None
        screen.stop()
        screen.start()
        assert registry.screen() is None

    def test_start_stop_idempotent(self, screen):
        events = []
        screen.subscribe(lambda p, running: events.append(running))
        screen.start()
        screen.start()
        screen.stop()
        screen.stop()
        assert events == [True, False]

    def test_failing_listener_does_not_block_others(self, screen):
        events = []

        def _boom(provider, running):
            raise RuntimeError("listener failed")

        screen.subscribe(_boom)
        screen.subscribe(lambda p, running: events.append(running))
        screen.start()
        assert events == [True]


class TestPendingFutures:
    @pytest.mark.asyncio
    async def test_stop_cancels_pending(self, accessibility):
        accessibility.start()
        future = accessibility.pending_future()
        accessibility.stop()
        assert future.cancelled()

    @pytest.mark.asyncio
    async def test_resolve_from_other_thread(self, accessibility):
        future = accessibility.pending_future()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, accessibility.resolve, future, True)
        assert await asyncio.wait_for(future, timeout=1) is True

    @pytest.mark.asyncio
    async def test_resolve_after_cancel_is_noop(self, accessibility):
        future = accessibility.pending_future()
        assert accessibility.cancel_pending() == 1
        accessibility.resolve(future, True)
        assert future.cancelled()

    @pytest.mark.asyncio
    async def test_completed_futures_are_forgotten(self, accessibility):
        future = accessibility.pending_future()
        accessibility.resolve(future, False)
        await future
        await asyncio.sleep(0)
        assert accessibility.cancel_pending() == 0

    @pytest.mark.asyncio
    async def test_registry_cancels_registered_providers(self, registry, accessibility):
        registry.register(accessibility)
        future = accessibility.pending_future()
        assert registry.cancel_pending() == 1
        assert future.cancelled()
