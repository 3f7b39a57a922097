"""
Tests for the console captcha prompter used by `main.py process`.
"""

import asyncio
from types import SimpleNamespace

import pytest

from core.captcha_relay import CaptchaRelay
from core.models import SessionHandle, SessionState
from main import ConsoleCaptchas
from monitoring.progress import EventType, ProgressBus

IMAGE = "data:image/png;base64,AAAA"


def make_handle(session_id="fake_0"):
    return SessionHandle(session_id=session_id, session=None, state=SessionState.BUSY)


@pytest.fixture
def relay():
    return CaptchaRelay(ProgressBus())


@pytest.fixture
def console(relay, tmp_path):
    return ConsoleCaptchas(SimpleNamespace(relay=relay), tmp_path / "captchas")


def replay(console, relay, batch_id="b1"):
    for event in relay.bus.history(batch_id):
        console.handle_event(event)


class TestConsoleCaptchas:

    @pytest.mark.asyncio
    async def test_prompt_and_answer(self, console, relay, tmp_path, capsys):
        challenge = relay.issue(make_handle(), "b1", "14102000674", IMAGE)
        waiter = asyncio.create_task(relay.wait_for_answer(challenge))
        await asyncio.sleep(0)

        replay(console, relay)
        out = capsys.readouterr().out
        assert "Captcha for 14102000674" in out
        assert (tmp_path / "captchas" / "fake_0_14102000674.png").exists()

        console.handle_line("x7k2p")
        assert await waiter == "x7k2p"
        assert console.prompted is None

    @pytest.mark.asyncio
    async def test_obsolete_captcha_is_reported_and_next_one_prompted(self, console, relay, capsys):
        relay.issue(make_handle("fake_0"), "b1", "14102000674", IMAGE)
        second = relay.issue(make_handle("fake_1"), "b1", "14102000675", IMAGE)
        replay(console, relay)
        assert console.prompted.identifier == "14102000674"
        capsys.readouterr()

        relay.cancel("fake_0", "Attempt finished")
        console.handle_event(relay.bus.history("b1")[-1])

        out = capsys.readouterr().out
        assert "14102000674 is no longer needed (Attempt finished)" in out
        assert "Captcha for 14102000675" in out
        assert console.prompted is second

        console.handle_line("abc12")
        assert second.answer.result() == "abc12"

    @pytest.mark.asyncio
    async def test_obsolete_for_another_captcha_keeps_prompt(self, console, relay, capsys):
        first = relay.issue(make_handle("fake_0"), "b1", "14102000674", IMAGE)
        relay.issue(make_handle("fake_1"), "b1", "14102000675", IMAGE)
        replay(console, relay)
        capsys.readouterr()

        relay.cancel("fake_1", "Attempt finished")
        console.handle_event(relay.bus.history("b1")[-1])

        assert "no longer needed" not in capsys.readouterr().out
        assert console.prompted is first

    @pytest.mark.asyncio
    async def test_reload_reprompts_with_fresh_image(self, console, relay, capsys):
        challenge = relay.issue(make_handle(), "b1", "14102000674", IMAGE)
        replay(console, relay)
        capsys.readouterr()

        console.handle_line("r")
        assert challenge.reload_requested.is_set()

        relay.reissue(challenge, "data:image/png;base64,BBBB")
        console.handle_event(relay.bus.history("b1")[-1])
        assert "Captcha for 14102000674" in capsys.readouterr().out
        assert console.prompted is challenge

    def test_line_without_captcha(self, console, capsys):
        console.handle_line("abc12")
        assert "No captcha is waiting" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_empty_answer_keeps_prompt(self, console, relay, capsys):
        challenge = relay.issue(make_handle(), "b1", "14102000674", IMAGE)
        replay(console, relay)

        console.handle_line("   ")
        assert "must not be empty" in capsys.readouterr().out
        assert console.prompted is challenge
        assert not challenge.answer.done()

    @pytest.mark.asyncio
    async def test_run_routes_typed_lines(self, console, relay):
        subscription = relay.bus.subscribe()
        runner = asyncio.create_task(console.run(subscription))
        try:
            challenge = relay.issue(make_handle(), "b1", "14102000674", IMAGE)
            waiter = asyncio.create_task(relay.wait_for_answer(challenge))
            for _ in range(50):
                if console.prompted is not None:
                    break
                await asyncio.sleep(0)
            assert console.prompted is challenge

            console.lines.put_nowait("x7k2p")
            assert await asyncio.wait_for(waiter, timeout=2) == "x7k2p"
        finally:
            runner.cancel()
            subscription.close()

        with pytest.raises(asyncio.CancelledError):
            await runner
        assert EventType.CHALLENGE_ISSUED in [e.type for e in relay.bus.history("b1")]
