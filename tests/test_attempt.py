import asyncio
import gc
import logging
import random
import weakref

import pytest

from task_attempt import (
    AttemptConfig,
    AttemptDefaults,
    Attempter,
    AttemptTimeoutError,
    TaskCancelledError,
    TaskFailedError,
    attempt,
    attempt_async,
)


def _start(config, fake_time, **kwargs):
    result = asyncio.get_running_loop().create_future()
    handle = attempt(
        config,
        lambda err, value: result.set_result((err, value)),
        timer=fake_time.timer,
        clock=fake_time.clock,
        rng=random.Random(7),
        **kwargs,
    )
    return handle, result


def _returning(*values):
    """动作：依次返回给定结果，之后重复最后一个。"""
    calls = []

    def action(done):
        calls.append(len(calls))
        done(None, values[min(len(calls) - 1, len(values) - 1)])

    return action, calls


class _Until200:
    def __init__(self):
        self.args = []

    def __call__(self, result):
        self.args.append(result)
        return result == 200


@pytest.mark.asyncio
async def test_calls_action_asynchronously(fake_time):
    action, calls = _returning(200)
    _, result = _start({"do": action, "until": _Until200()}, fake_time)
    assert calls == []
    await result
    assert calls == [0]


@pytest.mark.asyncio
async def test_action_error_is_not_retried(fake_time):
    until = _Until200()
    called = []

    def action(done):
        done(RuntimeError("uh-oh!"))

    _, result = _start({"do": action, "until": until}, fake_time)
    result.add_done_callback(lambda _: called.append(True))
    assert called == []

    err, value = await result
    assert "uh-oh!" in str(err)
    assert value is None
    assert until.args == []
    assert fake_time.durations == []


@pytest.mark.asyncio
async def test_first_attempt_succeeds(fake_time):
    until = _Until200()
    action, _ = _returning(200)
    handle, result = _start({"do": action, "until": until}, fake_time)

    assert await result == (None, 200)
    assert until.args == [200]
    assert fake_time.durations == []
    assert handle.done
    assert handle.attempts == 1


@pytest.mark.asyncio
async def test_second_attempt_succeeds_after_one_delay(fake_time):
    until = _Until200()
    action, calls = _returning(500, 200)
    _, result = _start({"do": action, "until": until}, fake_time)

    assert await result == (None, 200)
    assert len(calls) == 2
    assert until.args == [500, 200]
    assert len(fake_time.durations) == 1
    assert abs(fake_time.durations[0] - 500) <= 250


@pytest.mark.asyncio
async def test_nth_success_schedules_n_minus_one_delays(fake_time):
    action, calls = _returning(500, 500, 500, 200)
    config = {"do": action, "until": _Until200(), "interval": 100, "increment": 2, "jitter": 0.1}
    handle, result = _start(config, fake_time)

    assert await result == (None, 200)
    assert len(calls) == 4
    assert len(fake_time.durations) == 3
    nominal = 100.0
    for duration in fake_time.durations:
        assert nominal * 0.9 <= duration <= nominal * 1.1
        nominal *= 2
    assert handle.delays == fake_time.durations


@pytest.mark.asyncio
async def test_exponential_backoff_until_timeout(fake_time):
    timeout, interval, increment, jitter = 5000, 700, 1.2, 0.2
    action, calls = _returning(500)
    handle, result = _start(
        {
            "do": action,
            "until": _Until200(),
            "timeout": timeout,
            "interval": interval,
            "increment": increment,
            "jitter": jitter,
        },
        fake_time,
    )

    err, value = await result
    assert isinstance(err, AttemptTimeoutError)
    assert str(err) == "timeout"
    assert value is None

    wait = interval
    for duration in fake_time.durations:
        assert abs(duration - wait) <= wait * jitter
        wait *= increment
    assert fake_time.now < fake_time.start + timeout
    assert fake_time.now + (1 + jitter) * wait > fake_time.start + timeout
    assert len(calls) == len(fake_time.durations) + 1
    assert handle.attempts == len(calls)


@pytest.mark.asyncio
async def test_can_be_cancelled_immediately(fake_time):
    action, calls = _returning(500)
    handle, result = _start({"do": action, "until": _Until200()}, fake_time)
    handle.cancel()

    err, value = await result
    assert isinstance(err, TaskCancelledError)
    assert value is None
    assert calls == []


@pytest.mark.asyncio
async def test_can_be_cancelled_while_running(fake_time):
    was_cancelled = []
    calls = []

    class Cancellable:
        def __init__(self, done):
            self._done = done

        def cancel(self):
            was_cancelled.append(True)
            asyncio.get_running_loop().call_soon(self._done, RuntimeError("cancelled"), None)

    def do_nothing(done):
        calls.append(True)
        return Cancellable(done)

    handle, result = _start({"do": do_nothing, "until": _Until200()}, fake_time)
    await asyncio.sleep(0.01)
    assert calls == [True]
    handle.cancel()

    err, value = await result
    assert was_cancelled == [True]
    assert "cancelled" in str(err)
    assert value is None


@pytest.mark.asyncio
async def test_cancel_during_backoff_delay():
    durations = []

    class TimerHandle:
        cancelled = False

        def cancel(self):
            TimerHandle.cancelled = True

    def never_firing_timer(callback, duration):
        durations.append(duration)
        return TimerHandle()

    action, calls = _returning(500)
    result = asyncio.get_running_loop().create_future()
    handle = attempt(
        {"do": action, "until": _Until200()},
        lambda err, value: result.set_result((err, value)),
        timer=never_firing_timer,
        clock=lambda: 0.0,
    )
    while not durations:
        await asyncio.sleep(0)
    handle.cancel()

    err, _ = await result
    assert isinstance(err, TaskCancelledError)
    assert TimerHandle.cancelled
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_cancel_after_settle_is_noop(fake_time):
    action, _ = _returning(200)
    delivered = []
    handle = attempt(
        {"do": action, "until": _Until200()},
        lambda err, value: delivered.append((err, value)),
        timer=fake_time.timer,
        clock=fake_time.clock,
    )
    while not handle.done:
        await asyncio.sleep(0)
    handle.cancel()
    handle.cancel()
    await asyncio.sleep(0)

    assert delivered == [(None, 200)]


@pytest.mark.asyncio
async def test_predicate_exception_is_delivered(fake_time):
    action, _ = _returning(200)

    def until(_result):
        raise ValueError("bad predicate")

    _, result = _start({"do": action, "until": until}, fake_time)
    err, value = await result
    assert isinstance(err, ValueError)
    assert value is None


@pytest.mark.asyncio
async def test_callback_exception_is_logged(fake_time, caplog):
    action, _ = _returning(200)
    delivered = asyncio.get_running_loop().create_future()

    def callback(err, value):
        delivered.set_result(value)
        raise RuntimeError("callback failed")

    with caplog.at_level(logging.WARNING, logger="task_attempt.attempt"):
        attempt({"do": action, "until": _Until200()}, callback, timer=fake_time.timer, clock=fake_time.clock)
        assert await delivered == 200

    assert "callback failed" in caplog.text


def test_invalid_config_raises():
    attempter = Attempter(timer=lambda cb, d: None, clock=lambda: 0.0)
    with pytest.raises(ValueError):
        attempter.attempt({"until": lambda r: True}, lambda e, v: None)
    with pytest.raises(ValueError):
        attempter.attempt({"do": lambda cb: None, "until": lambda r: True, "jitter": 1.5}, lambda e, v: None)
    with pytest.raises(ValueError):
        attempter.attempt({"do": lambda cb: None, "until": lambda r: True, "increment": 0.5}, lambda e, v: None)


@pytest.mark.asyncio
async def test_attempter_defaults_and_dataclass_config(fake_time):
    action, _ = _returning(500, 200)
    attempter = Attempter(
        timer=fake_time.timer,
        clock=fake_time.clock,
        defaults=AttemptDefaults(interval=1000, jitter=0.0),
    )
    result = asyncio.get_running_loop().create_future()
    attempter.attempt({"do": action, "until": _Until200()}, lambda e, v: result.set_result((e, v)))
    assert await result == (None, 200)
    assert fake_time.durations == [1000.0]

    action, _ = _returning(500, 200)
    config = AttemptConfig(action=action, until=_Until200(), interval=50, jitter=0.0)
    assert await attempt_async(config, attempter=attempter) == 200
    assert fake_time.durations == [1000.0, 50.0]


@pytest.mark.asyncio
async def test_attempt_async_raises_delivered_errors(fake_time):
    attempter = Attempter(timer=fake_time.timer, clock=fake_time.clock)

    action, _ = _returning(500)
    with pytest.raises(AttemptTimeoutError):
        await attempt_async({"do": action, "until": _Until200(), "timeout": 2000}, attempter=attempter)

    with pytest.raises(KeyError):
        await attempt_async({"do": lambda done: done(KeyError("k")), "until": _Until200()}, attempter=attempter)

    with pytest.raises(TaskFailedError):
        await attempt_async({"do": lambda done: done("bad"), "until": _Until200()}, attempter=attempter)


@pytest.mark.asyncio
async def test_cancelling_attempt_async_cancels_action(fake_time):
    cancelled = []
    started = asyncio.Event()

    def action(done):
        started.set()
        return lambda: cancelled.append(True)

    attempter = Attempter(timer=fake_time.timer, clock=fake_time.clock)
    waiter = asyncio.ensure_future(attempt_async({"do": action, "until": _Until200()}, attempter=attempter))
    await started.wait()
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert cancelled == [True]


@pytest.mark.asyncio
async def test_default_asyncio_timer_and_clock():
    action, calls = _returning(500, 200)
    value = await attempt_async({"do": action, "until": _Until200(), "interval": 1, "timeout": 5000})
    assert value == 200
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_long_retry_chain_settles_and_cancels(fake_time):
    action, calls = _returning(*([500] * 3000 + [200]))
    _, result = _start({"do": action, "until": _Until200(), "interval": 0, "jitter": 0.0}, fake_time)
    assert await result == (None, 200)
    assert len(calls) == 3001

    action, calls = _returning(500)
    handle, result = _start({"do": action, "until": _Until200(), "interval": 0, "jitter": 0.0}, fake_time)
    while len(calls) < 3000:
        await asyncio.sleep(0)
    handle.cancel()
    err, _ = await result
    assert isinstance(err, TaskCancelledError)


@pytest.mark.asyncio
async def test_finished_iterations_are_released(fake_time):
    action_tasks = []

    def action(done):
        action_tasks.append(weakref.ref(done.__self__))
        done(None, 500)

    handle, result = _start({"do": action, "until": _Until200(), "interval": 0, "jitter": 0.0}, fake_time)
    while len(action_tasks) < 2000:
        await asyncio.sleep(0)
    gc.collect()

    assert len([ref for ref in action_tasks if ref() is not None]) <= 2

    handle.cancel()
    err, _ = await result
    assert isinstance(err, TaskCancelledError)


@pytest.mark.asyncio
async def test_module_attempt_accepts_defaults(fake_time):
    action, _ = _returning(500, 200)
    handle, result = _start(
        {"do": action, "until": _Until200()},
        fake_time,
        defaults=AttemptDefaults(interval=300, jitter=0.0),
    )
    assert await result == (None, 200)
    assert handle.delays == [300.0]
