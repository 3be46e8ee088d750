"""Tests for triggers and the Trigger Manager."""

import asyncio
import json

import httpx
import pytest

from agent_runtime.chain.client import RECONNECT_EVENT
from agent_runtime.chain.memory import InMemoryChainClient
from agent_runtime.conditions import Condition
from agent_runtime.errors import TriggerError
from agent_runtime.triggers.base import Trigger, TriggerStatus
from agent_runtime.triggers.interval import IntervalTrigger
from agent_runtime.triggers.manager import TriggerManager
from agent_runtime.triggers.onchain import OnChainTrigger
from agent_runtime.triggers.webhook import WebhookTrigger, sign_payload, verify_signature

SECRET = "s3cret"


class ManualTrigger(Trigger):
    """Fires only when the test calls `fire`."""

    trigger_type = "manual"

    def __init__(self, fail_on_start: bool = False):
        super().__init__()
        self.fail_on_start = fail_on_start

    async def _start(self, callback):
        if self.fail_on_start:
            raise RuntimeError("port in use")

    async def _stop(self):
        pass

    async def fire(self, payload):
        return await self._callback(payload)


async def _wait_for(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestTriggerContract:
    def test_start_twice_raises(self):
        async def scenario():
            trigger = ManualTrigger()
            await trigger.start(lambda p: None)
            with pytest.raises(TriggerError, match="already running"):
                await trigger.start(lambda p: None)
            await trigger.stop()
            await trigger.stop()
            return trigger.status

        assert asyncio.run(scenario()) == TriggerStatus.STOPPED

    def test_start_failure_sets_error(self):
        trigger = ManualTrigger(fail_on_start=True)
        with pytest.raises(TriggerError, match="port in use"):
            asyncio.run(trigger.start(lambda p: None))
        assert trigger.status == TriggerStatus.ERROR


class TestIntervalTrigger:
    def test_exhausts_after_max_executions(self):
        payloads = []
        statuses = []

        async def scenario():
            trigger = IntervalTrigger(interval_ms=5, start_immediately=True, max_executions=3)
            trigger.add_status_listener(lambda t, s: statuses.append(s))
            await trigger.start(payloads.append)
            await _wait_for(lambda: trigger.status == TriggerStatus.EXHAUSTED)
            await trigger.stop()
            return trigger

        trigger = asyncio.run(scenario())

        assert [p["execution"] for p in payloads] == [1, 2, 3]
        assert trigger.execution_count == 3
        assert statuses == [TriggerStatus.RUNNING, TriggerStatus.EXHAUSTED]
        assert trigger.status == TriggerStatus.EXHAUSTED

    def test_stop_cancels_pending_tick(self):
        payloads = []

        async def scenario():
            trigger = IntervalTrigger(interval_ms=60_000)
            await trigger.start(payloads.append)
            await asyncio.sleep(0.01)
            await trigger.stop()
            return trigger.status

        assert asyncio.run(scenario()) == TriggerStatus.STOPPED
        assert payloads == []

    def test_callback_errors_do_not_stop_the_loop(self):
        calls = []

        def flaky(payload):
            calls.append(payload["execution"])
            raise RuntimeError("boom")

        async def scenario():
            trigger = IntervalTrigger(interval_ms=5, start_immediately=True, max_executions=2)
            await trigger.start(flaky)
            await _wait_for(lambda: trigger.status == TriggerStatus.EXHAUSTED)

        asyncio.run(scenario())
        assert calls == [1, 2]

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            IntervalTrigger(interval_ms=0)

    @pytest.mark.parametrize("max_executions", [0, -1])
    def test_rejects_max_executions_below_one(self, max_executions):
        with pytest.raises(ValueError):
            IntervalTrigger(interval_ms=5, max_executions=max_executions)


class TestOnChainTrigger:
    def test_fires_on_matching_events_only(self):
        chain = InMemoryChainClient()
        payloads = []

        async def scenario():
            trigger = OnChainTrigger(chain, "Transfer", event_filter={"to": "0xme"})
            await trigger.start(payloads.append)
            await chain.emit_event("Transfer", {"to": "0xme", "value": 5}, block_number=9)
            await chain.emit_event("Transfer", {"to": "0xother", "value": 1})
            await chain.emit_event("Approval", {"to": "0xme"})

        asyncio.run(scenario())

        assert len(payloads) == 1
        assert payloads[0]["event_name"] == "Transfer"
        assert payloads[0]["args"] == {"to": "0xme", "value": 5}
        assert payloads[0]["block_number"] == 9
        assert payloads[0]["transaction_hash"].startswith("0x")

    def test_resubscribes_after_reconnect(self):
        chain = InMemoryChainClient()
        payloads = []

        async def scenario():
            trigger = OnChainTrigger(chain, "Transfer")
            await trigger.start(payloads.append)
            await chain.simulate_reconnect()
            await chain.emit_event("Transfer", {"value": 1})

        asyncio.run(scenario())
        assert len(payloads) == 1
        assert chain.listener_count("Transfer") == 1

    def test_stop_removes_only_own_handlers(self):
        chain = InMemoryChainClient()
        other = []

        async def scenario():
            chain.on("Transfer", None, other.append)
            trigger = OnChainTrigger(chain, "Transfer")
            await trigger.start(lambda p: None)
            await trigger.stop()
            await chain.emit_event("Transfer", {"value": 1})

        asyncio.run(scenario())
        assert chain.listener_count("Transfer") == 1
        assert chain.listener_count(RECONNECT_EVENT) == 0
        assert len(other) == 1


class TestWebhookTrigger:
    def _post(self, trigger, body: bytes, headers=None, callback=None):
        received = []

        async def scenario():
            app = trigger.build_app(callback or received.append)
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                response = await client.post(
                    trigger.path,
                    content=body,
                    headers={"content-type": "application/json", **(headers or {})},
                )
            await trigger.drain()
            return response

        return asyncio.run(scenario()), received

    def test_valid_signature(self):
        body = json.dumps({"goal": "rebalance"}).encode()
        response, received = self._post(
            WebhookTrigger(port=0, secret=SECRET),
            body,
            {"X-Webhook-Signature": sign_payload(body, SECRET)},
        )
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert received[0]["body"] == {"goal": "rebalance"}
        assert "timestamp" in received[0]

    def test_prefixed_signature(self):
        body = b'{"a": 1}'
        response, received = self._post(
            WebhookTrigger(port=0, secret=SECRET),
            body,
            {"X-Webhook-Signature": "sha256=" + sign_payload(body, SECRET)},
        )
        assert response.status_code == 200
        assert len(received) == 1

    @pytest.mark.parametrize("signature", [None, "deadbeef"])
    def test_bad_signature_rejected(self, signature):
        headers = {"X-Webhook-Signature": signature} if signature else {}
        response, received = self._post(WebhookTrigger(port=0, secret=SECRET), b"{}", headers)
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert received == []

    def test_no_secret_accepts_anything(self):
        response, received = self._post(WebhookTrigger(port=0, path="hooks"), b'{"x": 1}')
        assert response.status_code == 200
        assert received[0]["body"] == {"x": 1}

    def test_non_json_body(self):
        response, received = self._post(WebhookTrigger(port=0), b"not json")
        assert response.status_code == 400
        assert received == []

    def test_verify_signature_helper(self):
        assert verify_signature(b"x", sign_payload(b"x", SECRET), SECRET)
        assert not verify_signature(b"x", sign_payload(b"y", SECRET), SECRET)
        assert not verify_signature(b"x", "", SECRET)


class TestTriggerManager:
    def test_register_and_dispatch(self):
        manager = TriggerManager()
        trigger = ManualTrigger()
        received = []

        async def scenario():
            trigger_id = manager.register(trigger, goal={"type": "transfer"})
            await manager.start_all(lambda reg, payload: received.append((reg.id, reg.goal, payload)))
            await trigger.fire({"n": 1})
            return trigger_id

        trigger_id = asyncio.run(scenario())

        assert trigger_id.startswith("trg_")
        assert received == [(trigger_id, {"type": "transfer"}, {"n": 1})]
        assert manager.get(trigger_id).describe()["type"] == "manual"

    def test_duplicate_id(self):
        manager = TriggerManager()
        manager.register(ManualTrigger(), trigger_id="t1")
        with pytest.raises(TriggerError):
            manager.register(ManualTrigger(), trigger_id="t1")

    def test_start_failure_is_isolated(self):
        manager = TriggerManager()
        broken, healthy = ManualTrigger(fail_on_start=True), ManualTrigger()
        manager.register(broken, trigger_id="broken")
        manager.register(healthy, trigger_id="healthy")

        asyncio.run(manager.start_all(lambda reg, payload: None))

        assert broken.status == TriggerStatus.ERROR
        assert healthy.is_running()

    def test_enable_disable_unregister(self):
        manager = TriggerManager()
        trigger = ManualTrigger()

        async def scenario():
            manager.register(trigger, trigger_id="t1", enabled=False)
            await manager.start_all(lambda reg, payload: None)
            assert not trigger.is_running()

            await manager.enable("t1")
            assert trigger.is_running()

            await manager.disable("t1")
            assert trigger.status == TriggerStatus.STOPPED

            with pytest.raises(TriggerError):
                await manager.enable("missing")

            assert await manager.unregister("t1") is True
            assert await manager.unregister("t1") is False

        asyncio.run(scenario())
        assert manager.count == 0

    def test_cleanup_stops_and_forgets(self):
        manager = TriggerManager()
        trigger = ManualTrigger()

        async def scenario():
            manager.register(trigger)
            await manager.start_all(lambda reg, payload: None)
            await manager.cleanup()

        asyncio.run(scenario())
        assert trigger.status == TriggerStatus.STOPPED
        assert manager.list() == []

    def test_conditions_filter_payloads(self):
        manager = TriggerManager()
        trigger = ManualTrigger()
        received = []

        async def scenario():
            trigger_id = manager.register(
                trigger,
                conditions=[
                    Condition(field="args.amount", operator="gte", value=100),
                    Condition(field="args.memo", operator="contains", value="rent"),
                ],
            )
            await manager.start_all(lambda reg, payload: received.append(payload["args"]))
            await trigger.fire({"args": {"amount": 50, "memo": "rent"}})
            await trigger.fire({"args": {"amount": 150, "memo": "food"}})
            await trigger.fire({"args": {"amount": "150", "memo": "rent"}})
            await trigger.fire({"args": {"amount": 150, "memo": "rent may"}})
            return trigger_id

        trigger_id = asyncio.run(scenario())

        assert received == [{"amount": 150, "memo": "rent may"}]
        description = manager.get(trigger_id).describe()
        assert description["last_triggered_at"] is not None
        assert description["conditions"][0] == {
            "field": "args.amount", "operator": "gte", "value": 100,
        }

    def test_unmatched_payload_leaves_last_triggered_unset(self):
        manager = TriggerManager()
        trigger = ManualTrigger()

        async def scenario():
            manager.register(
                trigger, trigger_id="t1", conditions=[Condition(field="kind", value="invoice")]
            )
            await manager.start_all(lambda reg, payload: None)
            await trigger.fire({"kind": "receipt"})

        asyncio.run(scenario())
        assert manager.get("t1").last_triggered_at is None

    def test_manual_fire(self):
        manager = TriggerManager()
        received = []

        async def scenario():
            manager.register(
                ManualTrigger(), trigger_id="t1", conditions=[Condition(field="kind", value="x")]
            )
            manager.register(ManualTrigger(), trigger_id="off", enabled=False)

            with pytest.raises(TriggerError, match="not running"):
                await manager.fire("t1")

            await manager.start_all(lambda reg, payload: received.append((reg.id, payload)))
            await manager.fire("t1", {"kind": "manual"})
            await manager.fire("t1")

            with pytest.raises(TriggerError, match="Unknown trigger"):
                await manager.fire("missing")
            with pytest.raises(TriggerError, match="disabled"):
                await manager.fire("off")

        asyncio.run(scenario())
        assert received == [("t1", {"kind": "manual"}), ("t1", {})]
        assert manager.get("t1").last_triggered_at is not None
