from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from huayu.backend.config import AppConfig
from huayu.client.backend_runtime import BackendRuntime
from huayu.client.conversation import ConversationTurn, difficulty_label
from huayu.client.preferences import PreferenceStore
from huayu.client.session import TutorSession
from huayu.client.vocabulary import load_vocabulary

logger = logging.getLogger("huayu.console")

HELP_TEXT = """Commands:
  <text>            send a reply to the tutor
  /listen           speak one answer (on-device recognition)
  /record           push-to-record; press Enter again to stop
  /practice         ask for a short practice round on random vocabulary
  /replay           speak the last reply again
  /clear            clear the conversation history
  /live             open the live voice session
  /ptt              toggle the live session microphone
  /hangup           close the live session
  /diag             record 2 s and play it back
  /beep             play a short test tone
  /voices [prefix]  list local voices
  /devices          list input devices
  /set key=value    change a preference (e.g. difficulty=20)
  /quit             leave"""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Huayu Buddy console tutor")
    parser.add_argument("--vocab", default="", help="term,romanization file to practise with")
    parser.add_argument("--server-url", default="", help="API base URL (defaults to HB_SERVER_URL)")
    parser.add_argument(
        "--embedded-backend",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Start the API in-process when nothing answers at the server URL.",
    )
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def _print_turn(turn: ConversationTurn | None) -> None:
    if turn is None:
        return
    reply = turn.parsed_reply
    for label, value in (("Hanzi", reply.primary_text), ("Pinyin", reply.romanized_text), ("English", reply.gloss_text)):
        if value:
            print(f"  {label}: {value}")
    if turn.used_vocab_entries:
        print("  used: " + ", ".join(entry.term for entry in turn.used_vocab_entries))


def _print_notice(message: str, level: str) -> None:
    print(f"[{level}] {message}")


def _coerce_value(raw: str) -> object:
    lowered = raw.strip().lower()
    if lowered in {"true", "yes", "on"}:
        return True
    if lowered in {"false", "no", "off"}:
        return False
    if lowered in {"none", "null", ""}:
        return None
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw.strip()


async def _read_line(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


async def _handle_command(session: TutorSession, line: str) -> bool:
    command, _, rest = line.partition(" ")
    rest = rest.strip()
    if command == "/quit":
        return False
    if command == "/help":
        print(HELP_TEXT)
    elif command == "/listen":
        _print_turn(await session.listen_and_reply())
    elif command == "/record":
        await session.start_recording()
        print("recording... press Enter to stop")
        await _read_line("")
        _print_turn(await session.stop_recording_and_reply())
    elif command == "/practice":
        _print_turn(await session.practice())
    elif command == "/replay":
        await session.replay()
    elif command == "/clear":
        session.clear_history()
        print("history cleared")
    elif command == "/live":
        await session.live.connect()
        print("live session connected; /ptt toggles the microphone")
    elif command == "/ptt":
        enabled = session.live.toggle_push_to_talk()
        print(f"microphone {'on' if enabled else 'off'}")
    elif command == "/hangup":
        await session.live.disconnect()
        print("live session closed")
    elif command == "/diag":
        outcome = await session.listener.run_diagnostic()
        print(f"diagnostic: {outcome.status} ({outcome.payload_bytes} bytes)")
    elif command == "/beep":
        await session.speech.beep()
    elif command == "/voices":
        for voice in await session.speech.list_local_voices(rest):
            print(f"  {voice.id}  {voice.name}  {', '.join(voice.languages)}")
    elif command == "/devices":
        for device in await session.listener.list_input_devices():
            marker = "*" if device.is_default_input else " "
            print(f" {marker}{device.id}: {device.name}")
    elif command == "/set":
        key, _, value = rest.partition("=")
        prefs = session.update_preferences(**{key.strip(): _coerce_value(value)})
        print(f"difficulty {prefs.difficulty:g} ({difficulty_label(prefs.difficulty)}), topic {prefs.topic}")
    else:
        print(f"unknown command: {command} (try /help)")
    return True


async def run_console(args: argparse.Namespace) -> int:
    config = AppConfig.from_env()
    if args.server_url:
        config.server_url = args.server_url.rstrip("/")
    config.ensure_paths()
    store = PreferenceStore(config.prefs_path)
    store.init_schema()
    runtime = (
        BackendRuntime(config.server_url, boot_timeout_s=config.boot_timeout_s)
        if args.embedded_backend
        else None
    )
    session = TutorSession(config, store=store, runtime=runtime, notify=_print_notice)
    await session.start()
    try:
        if args.vocab:
            entries = load_vocabulary(Path(args.vocab))
            print(f"loaded {len(entries)} vocabulary entries")
            _print_turn(await session.load_vocabulary(entries))
        print("type /help for commands")
        while True:
            try:
                line = (await _read_line("> ")).strip()
            except EOFError:
                break
            if not line:
                continue
            try:
                if line.startswith("/"):
                    if not await _handle_command(session, line):
                        break
                else:
                    _print_turn(await session.submit_text(line))
            except Exception as exc:
                logger.exception("command failed: %s", line)
                print(f"[error] {exc}")
    finally:
        await session.close()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.INFO))
    return asyncio.run(run_console(args))


if __name__ == "__main__":
    raise SystemExit(main())
