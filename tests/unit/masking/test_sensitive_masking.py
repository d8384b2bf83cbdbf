"""
Tests for sensitive data masking.

Tests text pattern redaction, header redaction and pass-through of
unrelated content.
"""

import json

import pytest

from auditproxy.core.masking import MASK, is_sensitive_header, mask_headers, mask_text, mask_url


class TestTextMasking:
    """Test key/value redaction in free text."""

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("password=secret123", f"password={MASK}"),
            ("PWD: hunter2", f"PWD={MASK}"),
            ("token=abc.def.ghi", f"token={MASK}"),
            ("api_key=sk_live_123", f"api_key={MASK}"),
            ("api-key: sk_live_123", f"api-key={MASK}"),
            ("secret = shhh", f"secret={MASK}"),
            ("private_key=-----BEGIN", f"private_key={MASK}"),
            ("credit_card=4111 1111 1111 1111", f"credit_card={MASK}"),
            ("ssn=123-45-6789", f"ssn={MASK}"),
            ("email=john.doe@example.com", f"email={MASK}"),
            ("phone=+1 (555) 123-4567", f"phone={MASK}"),
        ],
    )
    def test_pattern_groups(self, text: str, expected: str) -> None:
        """Test each pattern group keeps its key and replaces the value."""
        assert mask_text(text) == expected

    def test_json_body_is_masked(self) -> None:
        """Test a closing quote between key and separator still matches."""
        masked = mask_text('{"password":"p@ss","user":"bob"}')

        assert "p@ss" not in masked
        assert f"password={MASK}" in masked
        assert '"user":"bob"' in masked

    def test_quoted_value_with_spaces_fully_masked(self) -> None:
        """Test values containing spaces are not partially leaked."""
        masked = mask_text('{"secret": "two words here"}')

        assert "two" not in masked
        assert "words" not in masked

    def test_escaped_quote_in_json_value_fully_masked(self) -> None:
        """Test an escaped quote inside a JSON string doesn't end the masked value early."""
        masked = mask_text(json.dumps({"password": 'ab"cd secretpart', "user": "bob"}))

        assert "secretpart" not in masked
        assert "cd" not in masked
        assert f"password={MASK}" in masked
        assert '"user": "bob"' in masked

    def test_escaped_quote_in_single_quoted_value(self) -> None:
        masked = mask_text(r"token='ab\'cd rest' next=1")

        assert "rest" not in masked
        assert "next=1" in masked

    def test_unterminated_quote_stops_at_line_end(self) -> None:
        """Test an unclosed quoted value doesn't swallow the following lines."""
        masked = mask_text('token: "abc\nuser=bob count=3')

        assert masked == f"token={MASK}\nuser=bob count=3"

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("phone=555-1234\nname=bob", f"phone={MASK}\nname=bob"),
            ("card_number=4111 1111\nname=bob", f"card_number={MASK}\nname=bob"),
            ("phone=555-1234 name=bob", f"phone={MASK} name=bob"),
        ],
    )
    def test_numeric_values_keep_following_text(self, text: str, expected: str) -> None:
        """Test digit-run values don't absorb the whitespace and text after them."""
        assert mask_text(text) == expected

    def test_authorization_with_scheme(self) -> None:
        """Test Bearer/Basic schemes don't leak the credential."""
        assert "abc123" not in mask_text("Authorization: Bearer abc123")
        assert "abc123" not in mask_text('{"Authorization": "Bearer abc123"}')
        assert "dXNlcjpwYXNz" not in mask_text("auth=Basic dXNlcjpwYXNz")

    def test_case_insensitive_keys(self) -> None:
        assert mask_text("PASSWORD=x1") == f"PASSWORD={MASK}"
        assert mask_text("Email=a@b.io") == f"Email={MASK}"

    def test_query_string_neighbours_preserved(self) -> None:
        """Test a masked query value doesn't swallow following parameters."""
        masked = mask_url("https://example.com/login?user=bob&password=pw1&page=2")

        assert masked == f"https://example.com/login?user=bob&password={MASK}&page=2"

    def test_unrelated_text_unchanged(self) -> None:
        """Test text without sensitive keys passes through untouched."""
        text = '{"name": "Alice", "count": 3, "items": [1, 2]}'

        assert mask_text(text) == text

    def test_none_and_blank_passthrough(self) -> None:
        assert mask_text(None) is None
        assert mask_text("") == ""
        assert mask_text("   ") == "   "
        assert mask_url(None) is None


class TestHeaderMasking:
    """Test header value redaction by name."""

    def test_sensitive_headers_masked(self) -> None:
        """Test every sensitive header name is masked regardless of case."""
        headers = {
            "Authorization": "Bearer abc",
            "X-API-Key": "k",
            "x-auth-token": "t",
            "Cookie": "a=b",
            "Set-Cookie": "c=d",
            "X-Access-Token": "t",
            "X-Refresh-Token": "t",
            "Bearer": "t",
            "Basic": "t",
        }

        masked = mask_headers(headers)

        assert set(masked) == set(headers)
        assert all(value == MASK for value in masked.values())

    def test_other_headers_pass_through(self) -> None:
        """Test non-sensitive headers keep their values and key case."""
        masked = mask_headers({"Content-Type": "application/json", "Authorization": "x"})

        assert masked == {"Content-Type": "application/json", "Authorization": MASK}

    def test_none_headers(self) -> None:
        assert mask_headers(None) is None

    def test_input_not_mutated(self) -> None:
        headers = {"Authorization": "Bearer abc"}
        mask_headers(headers)

        assert headers == {"Authorization": "Bearer abc"}

    def test_is_sensitive_header(self) -> None:
        assert is_sensitive_header("AUTHORIZATION") is True
        assert is_sensitive_header("Accept") is False

    def test_header_masking_follows_sensitive_header_check(self) -> None:
        """Test mask_headers masks exactly the names is_sensitive_header reports."""
        headers = {"X-Auth-Token": "t", "Accept": "*/*", "SET-COOKIE": "a=b", "X-Trace": "1"}

        masked = mask_headers(headers)

        for name, value in headers.items():
            assert (masked[name] == MASK) is is_sensitive_header(name)
