"""
Tests for footer detection.
"""
import pytest

from chat_inbox.core.footer import (
    FOOTER_MOBILE_SIGNATURE,
    FOOTER_QUOTE_HEADER,
    FOOTER_QUOTE_MARKER,
    FOOTER_SEPARATOR_RULE,
    FOOTER_SIGNATURE_DELIMITER,
    analyze_body,
    find_footer_offset,
    split_footer,
)


def test_signature_delimiter_offset_points_before_dashes():
    body = "Hello\n--\nJohn Doe"
    offset = find_footer_offset(body)
    assert offset == 6
    assert body[offset:].startswith("--")


def test_plain_body_has_no_footer():
    assert find_footer_offset("Hello world") is None
    assert find_footer_offset("") is None
    assert find_footer_offset(None) is None


def test_crlf_is_normalized_before_scanning():
    assert find_footer_offset("Hello\r\n--\r\nJohn Doe") == 6


def test_delimiter_with_trailing_whitespace():
    assert find_footer_offset("Hi\n--  \nBob") == 3


@pytest.mark.parametrize("body", ["--\nJohn Doe", "-----\nnotes", "=====\nnotes"])
def test_delimiters_never_match_the_first_line(body):
    assert find_footer_offset(body) is None


@pytest.mark.parametrize("body,offset,kind", [
    ("Body\n_____\nfooter", 5, FOOTER_SEPARATOR_RULE),
    ("Body\n======\nfooter", 5, FOOTER_SEPARATOR_RULE),
    ("See you\n\nSent from my iPhone", 9, FOOTER_MOBILE_SIGNATURE),
    ("iPhoneから送信", 0, FOOTER_MOBILE_SIGNATURE),
    ("> quoted text\nreply", 0, FOOTER_QUOTE_MARKER),
    ("Hi\n-----Original Message-----\nFrom: x", 3, FOOTER_QUOTE_HEADER),
    ("OK\n2024/01/15 10:00 差出人: 山田", 3, FOOTER_QUOTE_HEADER),
    ("了解です\n2024年1月15日(月) 10:00 山田太郎 <taro@example.jp>:\n> 本文", 5, FOOTER_QUOTE_HEADER),
])
def test_pattern_classes(body, offset, kind):
    split = split_footer(body)
    assert split.offset == offset
    assert split.kind == kind


def test_english_quote_header():
    body = "Thanks\n\nOn Mon, Jan 1, 2024 at 10:00 AM John <john@example.com> wrote:\n> hi"
    split = split_footer(body)
    assert split.offset == 8
    assert split.kind == FOOTER_QUOTE_HEADER
    assert split.content == "Thanks"


def test_english_quote_header_wrapped_over_two_lines():
    body = (
        "Sounds good\n\n"
        "On Mon, Jan 15, 2024 at 10:00 AM John Doe <john.doe@example.com>\n"
        "wrote:\n"
        "> Lunch at noon?"
    )
    split = split_footer(body)
    assert split.offset == 13
    assert split.kind == FOOTER_QUOTE_HEADER
    assert split.content == "Sounds good"


def test_sentence_starting_with_on_is_not_a_header():
    assert find_footer_offset("On second thought\nlet us meet at two") is None


def test_first_matching_line_wins():
    body = "A\n> quote\n--\nsig"
    split = split_footer(body)
    assert split.offset == 2
    assert split.kind == FOOTER_QUOTE_MARKER


def test_split_footer_trims_content_and_footer():
    split = split_footer("Hello  \n\n--\nJohn Doe\n")
    assert split.content == "Hello"
    assert split.footer == "--\nJohn Doe"
    assert split.kind == FOOTER_SIGNATURE_DELIMITER


def test_split_without_footer_keeps_whole_body():
    split = split_footer("Just text\n")
    assert split.content == "Just text\n"
    assert split.footer is None
    assert split.offset is None


def test_truncation_and_footer_are_independent():
    long_body = "x" * 501
    analysis = analyze_body(long_body)
    assert analysis.is_truncatable
    assert not analysis.has_footer
    assert analysis.offers_expand
    assert analysis.preview() == "x" * 500 + "..."

    short_with_footer = analyze_body("Hello\n--\nJohn Doe")
    assert not short_with_footer.is_truncatable
    assert short_with_footer.has_footer
    assert short_with_footer.offers_expand
    assert short_with_footer.preview() == "Hello"


def test_threshold_is_measured_on_main_content():
    body = "y" * 400 + "\n--\n" + "z" * 400
    analysis = analyze_body(body)
    assert not analysis.is_truncatable
    assert analysis.has_footer


def test_exactly_threshold_is_not_truncatable():
    assert not analyze_body("a" * 500).is_truncatable
    assert not analyze_body("plain").offers_expand
