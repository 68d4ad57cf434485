"""Tests for PII tokenization."""

from __future__ import annotations

from toolexec.services.pii_tokenizer import PIITokenizer


class TestPIITokenizer:
    """Test detection, stable tokens and reversal."""

    def test_email_and_phone(self) -> None:
        text, replaced = PIITokenizer().tokenize("Contact alice@example.com, 555-123-4567")
        assert text == "Contact [EMAIL_1], [PHONE_1]"
        assert replaced is True

    def test_same_value_same_token(self) -> None:
        tokenizer = PIITokenizer()
        text, _ = tokenizer.tokenize("a@b.io, c@d.io and a@b.io again")
        assert text == "[EMAIL_1], [EMAIL_2] and [EMAIL_1] again"

        later, _ = tokenizer.tokenize("reply to c@d.io")
        assert later == "reply to [EMAIL_2]"

    def test_other_kinds(self) -> None:
        tokenizer = PIITokenizer()
        text, _ = tokenizer.tokenize(
            "SSN 123-45-6789, card 4111 1111 1111 1111, Dr. Jane Smith at 42 Baker Street"
        )
        assert text == "SSN [SSN_1], card [CARD_1], [NAME_1] at [ADDRESS_1]"
        assert tokenizer.get_stats() == {"SSN": 1, "CARD": 1, "NAME": 1, "ADDRESS": 1}

    def test_clean_text_untouched(self) -> None:
        assert PIITokenizer().tokenize("nothing to hide here") == ("nothing to hide here", False)

    def test_tokenizing_twice_is_stable(self) -> None:
        tokenizer = PIITokenizer()
        once, _ = tokenizer.tokenize("mail bob@example.org")
        twice, replaced = PIITokenizer().tokenize(once)
        assert twice == once
        assert replaced is False

    def test_detokenize(self) -> None:
        tokenizer = PIITokenizer()
        original = "Call 555-123-4567 or write to carol@example.net"
        text, _ = tokenizer.tokenize(original)

        assert tokenizer.detokenize(text) == original
        assert tokenizer.mapping == {"[PHONE_1]": "555-123-4567", "[EMAIL_1]": "carol@example.net"}

    def test_tokenize_value(self) -> None:
        value = {"results": {"echo": ["x@y.com", 3, None]}, "count": 2, "pair": ("z@y.com",)}

        result, changed = PIITokenizer().tokenize_value(value)

        assert changed is True
        assert result == {"results": {"echo": ["[EMAIL_1]", 3, None]}, "count": 2, "pair": ["[EMAIL_2]"]}

    def test_tokenize_value_without_strings(self) -> None:
        assert PIITokenizer().tokenize_value([1, 2.5, True]) == ([1, 2.5, True], False)
