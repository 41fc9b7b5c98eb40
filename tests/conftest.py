import asyncio

import pytest


class FakeTime:
    """假定时器 + 假时钟：定时器在下一轮事件循环触发，并把时钟拨快 duration。"""

    def __init__(self, start: float = 123456.0):
        self.start = start
        self.now = start
        self.durations = []

    def timer(self, callback, duration):
        self.durations.append(duration)

        def fire():
            self.now += duration
            callback()

        asyncio.get_running_loop().call_soon(fire)

    def clock(self):
        return self.now


@pytest.fixture
def fake_time():
    return FakeTime()
