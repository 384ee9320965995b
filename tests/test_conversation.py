from __future__ import annotations

import pytest

from huayu.client.conversation import (
    ConversationState,
    ConversationTurn,
    ParsedReply,
    VocabEntry,
    build_system_prompt,
    difficulty_label,
    difficulty_policy,
    format_vocabulary,
    parse_reply,
    topic_line,
    used_vocabulary,
)


@pytest.mark.parametrize(
    ("difficulty", "prefix"),
    [
        (0, "STRICT MODE"),
        (10, "STRICT MODE"),
        (11, "PREFER LISTED VOCAB"),
        (35, "PREFER LISTED VOCAB"),
        (36, "GUIDED MODE"),
        (70, "GUIDED MODE"),
        (71, "LOOSE MODE"),
        (100, "LOOSE MODE"),
        (-5, "STRICT MODE"),
        (250, "LOOSE MODE"),
    ],
)
def test_difficulty_policy_bands(difficulty: float, prefix: str) -> None:
    assert difficulty_policy(difficulty).startswith(prefix)


def test_difficulty_labels() -> None:
    assert [difficulty_label(v) for v in (5, 20, 50, 90)] == ["Strict", "Tight", "Balanced", "Loose"]


def test_format_vocabulary_handles_missing_fields_and_cap() -> None:
    entries = [
        VocabEntry("你好", "nǐ hǎo"),
        VocabEntry("谢谢", ""),
        VocabEntry("", "zàijiàn"),
        VocabEntry("  ", "  "),
    ]
    assert format_vocabulary(entries) == "你好(nǐ hǎo), 谢谢, zàijiàn"

    many = [VocabEntry(f"词{i}") for i in range(100)]
    formatted = format_vocabulary(many)
    assert formatted.count(", ") == 79
    assert "词79" in formatted
    assert "词80" not in formatted


def test_topic_line_auto_and_custom() -> None:
    assert topic_line("auto") == "Topic: general daily conversation."
    assert topic_line("") == "Topic: general daily conversation."
    assert topic_line("food") == "Topic: food. Focus your questions on this topic."


def test_system_prompt_three_line_variant_with_vocab_and_focus() -> None:
    vocab = [VocabEntry("你好", "nǐ hǎo"), VocabEntry("朋友", "péngyou")]
    prompt = build_system_prompt(
        difficulty=50,
        topic="school",
        show_gloss=True,
        vocabulary=vocab,
        practice_focus=vocab[1:],
    )
    lines = prompt.split("\n")
    assert lines[:4] == ["Reply in EXACTLY 3 lines:", "Hanzi: ...", "Pinyin: ...", "English: ..."]
    assert lines[4].startswith("GUIDED MODE")
    assert lines[5] == "Topic: school. Focus your questions on this topic."
    assert lines[6] == "Keep sentences short and beginner-friendly."
    assert lines[7] == "Vocabulary list: 你好(nǐ hǎo), 朋友(péngyou)."
    assert lines[8] == "Practice focus (use these words heavily): 朋友(péngyou)."


def test_system_prompt_two_line_variant_without_vocab() -> None:
    prompt = build_system_prompt(difficulty=5, topic="auto", show_gloss=False, vocabulary=[])
    lines = prompt.split("\n")
    assert lines[0] == "Reply in EXACTLY 2 lines:"
    assert lines[3] == "NO English."
    assert "English: ..." not in prompt
    assert lines[-2:] == ["", ""]


def test_parse_reply_tagged_three_lines() -> None:
    raw = "hanzi : 你好！\nPINYIN: nǐ hǎo!\nEnglish:Hello!"
    assert parse_reply(raw, True) == ParsedReply("你好！", "nǐ hǎo!", "Hello!")


def test_parse_reply_positional_two_lines() -> None:
    parsed = parse_reply("  你好  \n nǐ hǎo ", True)
    assert parsed.primary_text == "你好"
    assert parsed.romanized_text == "nǐ hǎo"
    assert parsed.gloss_text == ""
    assert parsed.romanized_tokens == ["nǐ", "hǎo"]


def test_parse_reply_gloss_fallback_only_when_shown() -> None:
    raw = "你好\nnǐ hǎo\nHello"
    assert parse_reply(raw, True).gloss_text == "Hello"
    assert parse_reply(raw, False).gloss_text == ""


def test_parse_reply_positional_skips_tagged_lines() -> None:
    parsed = parse_reply("Pinyin: nǐ hǎo\n你好", False)
    assert parsed.romanized_text == "nǐ hǎo"
    assert parsed.primary_text == ""


def test_parse_reply_never_raises_on_odd_input() -> None:
    assert parse_reply(None, True) == ParsedReply()
    assert parse_reply("", True) == ParsedReply()
    assert parse_reply(42, False).primary_text == "42"


def test_used_vocabulary_keeps_order_and_duplicates() -> None:
    entries = [VocabEntry("朋友"), VocabEntry("你好"), VocabEntry(""), VocabEntry("你好", "nǐ hǎo")]
    used = used_vocabulary(entries, "你好，朋友！")
    assert [e.term for e in used] == ["朋友", "你好", "你好"]
    assert used_vocabulary(entries, "") == []


def test_conversation_state_clear_history() -> None:
    state = ConversationState(vocabulary=[VocabEntry("你好")])
    state.history.append(
        ConversationTurn(
            timestamp=1.0,
            prompt_text="hi",
            raw_reply_text="你好",
            parsed_reply=ParsedReply("你好"),
            user_reply_text="hi",
        )
    )
    state.messages.append({"role": "assistant", "content": "你好"})
    state.last_reply = ParsedReply("你好")
    state.user_reply = "hi"

    state.clear_history()

    assert state.history == []
    assert state.messages == []
    assert state.last_reply is None
    assert state.user_reply == ""
    assert state.vocabulary == [VocabEntry("你好")]
