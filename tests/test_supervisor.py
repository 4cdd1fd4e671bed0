import asyncio

from alert_relay_bot.errors import QuantizationError
from alert_relay_bot.supervisor import TaskSupervisor


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def send(self, text, chat_id=None, reply_markup=None):
        self.sent.append((chat_id, text))
        return 1


def test_failed_task_is_reported_to_its_chat():
    notifier = FakeNotifier()

    async def boom():
        raise QuantizationError("qty too small")

    async def run():
        sup = TaskSupervisor(notifier, admin_chat_id=99)
        task = sup.spawn("trade:s1", boom(), chat_id=5)
        assert await task is None
        await sup.join()
        assert sup.active == 0

    asyncio.run(run())
    assert notifier.sent == [(5, "Background task trade:s1 failed: Trade not placed: qty too small")]


def test_failure_without_chat_goes_to_admin():
    notifier = FakeNotifier()

    async def boom():
        raise RuntimeError("x")

    async def run():
        sup = TaskSupervisor(notifier, admin_chat_id=99)
        sup.spawn("fill_stream", boom())
        await sup.join()

    asyncio.run(run())
    assert notifier.sent[0][0] == 99


def test_result_is_returned():
    async def ok():
        return 42

    async def run():
        sup = TaskSupervisor(FakeNotifier())
        return await sup.spawn("x", ok())

    assert asyncio.run(run()) == 42
