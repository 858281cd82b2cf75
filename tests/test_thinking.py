from __future__ import annotations

from chat_oracle.runs.thinking import compute_increment, read_cursor, read_increment


def test_reads_only_new_reasoning(tmp_path) -> None:  # noqa: ANN001
    assert read_increment(tmp_path, "Considering the question") == "Considering the question"
    assert read_increment(tmp_path, "Considering the question. Checking sources") == ". Checking sources"
    assert read_increment(tmp_path, "Considering the question. Checking sources") == ""

    cursor = read_cursor(tmp_path)
    assert cursor is not None
    assert cursor.cursor == len("Considering the question. Checking sources")


def test_rewritten_reasoning_is_returned_whole(tmp_path) -> None:  # noqa: ANN001
    read_increment(tmp_path, "First draft of thoughts")
    assert read_increment(tmp_path, "Entirely new plan") == "Entirely new plan"


def test_shorter_text_with_same_prefix_resets() -> None:
    _chunk, state = compute_increment("abcdef", None)
    chunk, _state = compute_increment("abc", state)
    assert chunk == "abc"


def test_corrupt_cursor_is_ignored(tmp_path) -> None:  # noqa: ANN001
    (tmp_path / "thinking.json").write_text('{"cursor": "x"}', encoding="utf-8")
    assert read_cursor(tmp_path) is None
    assert read_increment(tmp_path, "fresh") == "fresh"
