"""Tests for failure fingerprinting."""

from __future__ import annotations

from controlroom.core.fingerprint import (
    MAX_TAIL_LINES,
    compute_fingerprint,
    fingerprint_matches,
    normalize_line,
)


def test_fingerprint_is_sha256_hex() -> None:
    fp = compute_fingerprint(1, "boom")
    assert len(fp) == 64
    assert fp == fp.lower()
    int(fp, 16)


def test_timestamps_and_pids_do_not_change_fingerprint() -> None:
    first = "2024-01-01T10:00:00Z ERROR worker pid=1234 failed\nTraceback at 10:00:01"
    second = "2025-06-30 23:59:59.123 ERROR worker pid=98765 failed\nTraceback at 23:59:59"
    assert compute_fingerprint(2, first) == compute_fingerprint(2, second)


def test_guids_addresses_and_user_paths_normalized() -> None:
    first = (
        "job 3f2504e0-4f89-11d3-9a0c-0305e82c3301 crashed at 0x7ffd1234abcd\n"
        "File /home/alice/project/app.py:42 raised"
    )
    second = (
        "job 6fa459ea-ee8a-3ca4-894e-db77e160355e crashed at 0x00400000\n"
        "File /home/bob/project/app.py:97 raised"
    )
    assert compute_fingerprint(1, first) == compute_fingerprint(1, second)


def test_different_messages_differ() -> None:
    assert compute_fingerprint(1, "disk full") != compute_fingerprint(1, "permission denied")


def test_exit_code_is_part_of_fingerprint() -> None:
    assert compute_fingerprint(1, "boom") != compute_fingerprint(2, "boom")


def test_missing_exit_code_recorded_as_minus_one() -> None:
    assert compute_fingerprint(None, "boom") == compute_fingerprint(-1, "boom")


def test_blank_lines_ignored() -> None:
    assert compute_fingerprint(1, "a\n\n   \nb\n") == compute_fingerprint(1, "a\nb")


def test_only_tail_lines_contribute() -> None:
    tail = [f"error {chr(97 + i % 26)}" for i in range(MAX_TAIL_LINES)]
    with_noise = ["unrelated preamble"] * 10 + tail
    assert compute_fingerprint(1, "\n".join(with_noise)) == compute_fingerprint(1, "\n".join(tail))


def test_normalize_line_examples() -> None:
    assert normalize_line("  File   x.py, line 12 ") == "File x.py, line [LINE]"
    assert normalize_line("PID 4242 exited") == "PID [N] exited"


def test_fingerprint_matches() -> None:
    assert fingerprint_matches("abc", "abc")
    assert not fingerprint_matches("abc", "abd")
    assert not fingerprint_matches(None, None)
    assert not fingerprint_matches("", "")
