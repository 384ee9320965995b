from __future__ import annotations

import asyncio
import random
import threading

from huayu.client.api_client import ApiError
from huayu.client.conversation import GREETING_PROMPT, PRACTICE_PROMPT, VocabEntry
from huayu.client.turn_controller import TurnController, TurnSettings


class FakeClient:
    def __init__(self, reply: str = "Hanzi: 你好！\nPinyin: nǐ hǎo!\nEnglish: Hello!") -> None:
        self.reply = reply
        self.fail = False
        self.chat_calls: list[dict] = []
        self.romanize_calls: list[str] = []

    def chat(self, *, model: str, messages: list[dict[str, str]], temperature: float) -> str:
        self.chat_calls.append({"model": model, "messages": messages, "temperature": temperature})
        if self.fail:
            raise ApiError("chat failed: upstream down")
        return self.reply

    def romanize(self, text: str, *, model: str = "gpt-4o-mini") -> str:
        self.romanize_calls.append(text)
        return "nǐ hǎo"


class FakeSpeech:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def speak(self, text, lang="en-US", selection=None, options=None) -> bool:
        self.calls.append((text, lang))
        if options is not None and options.on_start is not None:
            options.on_start()
        if options is not None and options.on_progress is not None and options.tokens:
            options.on_progress(len(options.tokens) - 1)
        if options is not None and options.on_end is not None:
            options.on_end()
        return True


def _controller(client=None, speech=None, **settings) -> TurnController:
    notices: list[tuple[str, str]] = []
    controller = TurnController(
        client or FakeClient(),
        speech or FakeSpeech(),
        settings=TurnSettings(**settings),
        notify=lambda message, level: notices.append((message, level)),
        rng=random.Random(7),
    )
    controller.notices = notices  # type: ignore[attr-defined]
    return controller


def test_turn_with_single_vocab_entry_logs_usage_and_speaks_once() -> None:
    client = FakeClient()
    speech = FakeSpeech()
    controller = _controller(client, speech)
    controller.state.vocabulary = [VocabEntry("你好", "nǐ hǎo")]

    turn = asyncio.run(controller.submit_turn("hello"))

    assert turn is not None
    assert [e.term for e in turn.used_vocab_entries] == ["你好"]
    assert turn.parsed_reply.primary_text == "你好！"
    assert turn.prompt_text == "hello"
    assert speech.calls == [("你好！", "zh-CN")]
    assert controller.state.history == [turn]
    assert controller.state.messages == [
        {"role": "assistant", "content": "Hanzi: 你好！\nPinyin: nǐ hǎo!\nEnglish: Hello!"}
    ]
    assert controller.state.romanized_tokens == ["nǐ", "hǎo!"]
    assert controller.state.highlight_index == 1
    assert controller.state.speaking is False
    assert controller.phase == "idle"


def test_turn_request_carries_system_prompt_history_and_scaled_temperature() -> None:
    client = FakeClient()
    controller = _controller(client)
    controller.state.messages.append({"role": "assistant", "content": "earlier"})
    controller.state.messages.append({"role": "system", "content": "stale"})

    asyncio.run(controller.submit_turn("  我很好  ", temperature=0.4))

    call = client.chat_calls[0]
    roles = [m["role"] for m in call["messages"]]
    assert roles == ["system", "assistant", "user"]
    assert call["messages"][0]["content"].startswith("Reply in EXACTLY 3 lines:")
    assert call["messages"][-1]["content"] == "我很好"
    assert abs(call["temperature"] - 0.55) < 1e-9


def test_failed_chat_leaves_state_untouched_and_notifies() -> None:
    client = FakeClient()
    client.fail = True
    speech = FakeSpeech()
    controller = _controller(client, speech)

    assert asyncio.run(controller.submit_turn("hello")) is None
    assert controller.state.history == []
    assert controller.state.messages == []
    assert controller.state.last_reply is None
    assert speech.calls == []
    assert controller.notices == [("Chat request failed", "error")]
    assert controller.phase == "idle"


def test_missing_pinyin_is_filled_by_romanization() -> None:
    client = FakeClient(reply="Hanzi: 你好")
    controller = _controller(client)

    turn = asyncio.run(controller.submit_turn("hi"))

    assert client.romanize_calls == ["你好"]
    assert turn is not None
    assert turn.parsed_reply.romanized_text == "nǐ hǎo"


def test_gloss_is_spoken_after_delay_when_enabled() -> None:
    speech = FakeSpeech()
    controller = _controller(speech=speech, speak_gloss=True, gloss_delay_ms=5000)
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    controller._sleep = fake_sleep

    asyncio.run(controller.submit_turn("hello"))

    assert speech.calls == [("你好！", "zh-CN"), ("Hello!", "en-US")]
    assert delays == [2.0]


def test_gloss_not_spoken_when_hidden() -> None:
    speech = FakeSpeech()
    controller = _controller(speech=speech, speak_gloss=True, show_gloss=False)

    asyncio.run(controller.submit_turn("hello"))

    assert speech.calls == [("你好！", "zh-CN")]


def test_greeting_fires_once_when_vocabulary_first_loaded() -> None:
    client = FakeClient()
    controller = _controller(client)

    async def scenario() -> None:
        assert await controller.set_vocabulary([]) is None
        first = await controller.set_vocabulary([VocabEntry("你好")])
        second = await controller.set_vocabulary([VocabEntry("谢谢")])
        assert first is not None
        assert second is None

    asyncio.run(scenario())

    prompts = [call["messages"][-1]["content"] for call in client.chat_calls]
    assert prompts == [GREETING_PROMPT]
    assert controller.state.vocabulary == [VocabEntry("谢谢")]


def test_practice_turn_uses_focus_subset_and_fixed_temperature() -> None:
    client = FakeClient()
    controller = _controller(client)
    controller.state.vocabulary = [VocabEntry(f"词{i}") for i in range(10)]

    asyncio.run(controller.submit_practice_turn())

    call = client.chat_calls[0]
    assert call["messages"][-1]["content"] == PRACTICE_PROMPT
    assert abs(call["temperature"] - (0.25 + 0.45 * 0.75)) < 1e-9
    focus_line = call["messages"][0]["content"].split("\n")[-1]
    assert focus_line.startswith("Practice focus (use these words heavily): ")
    assert focus_line.count(", ") == 5


def test_practice_turn_without_vocabulary_only_notifies() -> None:
    client = FakeClient()
    controller = _controller(client)

    assert asyncio.run(controller.submit_practice_turn()) is None
    assert client.chat_calls == []
    assert controller.notices and controller.notices[0][1] == "warn"


def test_replay_last_speaks_primary_then_gloss() -> None:
    speech = FakeSpeech()
    controller = _controller(speech=speech)

    async def scenario() -> bool:
        await controller.submit_turn("hello")
        speech.calls.clear()
        controller.settings.speak_gloss = True
        return await controller.replay_last()

    assert asyncio.run(scenario()) is True
    assert speech.calls == [("你好！", "zh-CN"), ("Hello!", "en-US")]


def test_replay_without_reply_is_noop() -> None:
    speech = FakeSpeech()
    controller = _controller(speech=speech)
    assert asyncio.run(controller.replay_last()) is False
    assert speech.calls == []


def test_close_during_gloss_delay_drops_gloss() -> None:
    speech = FakeSpeech()
    controller = _controller(speech=speech, speak_gloss=True, gloss_delay_ms=1500)

    async def scenario() -> None:
        task = asyncio.create_task(controller.submit_turn("hello"))
        while controller._gloss_timer is None:
            await asyncio.sleep(0)
        controller.close()
        await task

    asyncio.run(scenario())

    assert speech.calls == [("你好！", "zh-CN")]
    assert controller.closed is True
    assert asyncio.run(controller.submit_turn("again")) is None


class HangingSpeech(FakeSpeech):
    """Speech that never finishes on its own."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.cancelled = 0

    async def speak(self, text, lang="en-US", selection=None, options=None) -> bool:
        self.calls.append((text, lang))
        if options is not None and options.on_start is not None:
            options.on_start()
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return True


def test_close_cuts_off_reply_being_spoken() -> None:
    speech = HangingSpeech()
    controller = _controller(speech=speech, speak_gloss=True)

    async def scenario():
        task = asyncio.create_task(controller.submit_turn("hello"))
        await speech.started.wait()
        assert controller.state.speaking is True
        controller.close()
        return await task

    turn = asyncio.run(scenario())

    assert turn is not None
    assert speech.cancelled == 1
    assert speech.calls == [("你好！", "zh-CN")]
    assert controller.state.speaking is False
    assert controller.phase == "idle"


class GatedChatClient(FakeClient):
    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def chat(self, *, model: str, messages: list[dict[str, str]], temperature: float) -> str:
        self.entered.set()
        self.release.wait(timeout=5)
        return super().chat(model=model, messages=messages, temperature=temperature)


def test_close_while_awaiting_reply_returns_to_idle() -> None:
    client = GatedChatClient()
    speech = FakeSpeech()
    controller = _controller(client, speech)

    async def scenario():
        task = asyncio.create_task(controller.submit_turn("hello"))
        while not client.entered.is_set():
            await asyncio.sleep(0.01)
        assert controller.phase == "awaiting_reply"
        controller.close()
        client.release.set()
        return await task

    assert asyncio.run(scenario()) is None
    assert controller.phase == "idle"
    assert controller.state.history == []
    assert speech.calls == []
