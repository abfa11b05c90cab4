import pytest

from tenantauth.service.errors import ConflictError, ForbiddenError, ValidationError
from tenantauth.service.validators import (
    validate_email,
    validate_password,
    validate_redirect_uri,
    validate_username,
)


def _field_message(exc: ValidationError):
    (error,) = exc.errors
    return error["field"], error["message"]


class TestUsername:
    def test_trims_and_accepts(self):
        assert validate_username("  alice_01 ") == "alice_01"

    @pytest.mark.parametrize(
        "value,message",
        [
            ("", "Username cannot be empty"),
            ("   ", "Username cannot be empty"),
            ("ab", "Username too short"),
            ("a" * 51, "Username too long"),
            ("bob smith", "Invalid characters"),
            ("<script>", "Invalid characters"),
            ("javascript:x", "Invalid characters"),
        ],
    )
    def test_rejects(self, value, message):
        with pytest.raises(ValidationError) as exc_info:
            validate_username(value)
        assert _field_message(exc_info.value) == ("username", message)

    @pytest.mark.parametrize("value", ["admin", "ROOT", "Administrator", "null"])
    def test_reserved_names_conflict(self, value):
        with pytest.raises(ConflictError) as exc_info:
            validate_username(value)
        assert exc_info.value.message == "Reserved Username"


class TestEmail:
    def test_normalizes(self):
        assert validate_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "value", ["", "alice", "@example.com", "alice@example", "a.b@example", "x<y@a.com"]
    )
    def test_rejects(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_email(value)
        assert _field_message(exc_info.value) == ("email", "Invalid email format")


class TestPassword:
    def test_bounds(self):
        assert validate_password("abcdef") == "abcdef"
        assert validate_password("x" * 128) == "x" * 128

    def test_too_short(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_password("abcde")
        assert _field_message(exc_info.value) == ("password", "Password too weak")

    def test_too_long_uses_given_field(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_password("x" * 129, "new_password")
        assert _field_message(exc_info.value) == ("new_password", "Password too long")


class TestRedirectUri:
    ALLOWED = ["https://app.example.com", "http://localhost:3000"]

    def test_exact_origin_match(self):
        uri = "https://app.example.com/signed-out?x=1"
        assert validate_redirect_uri(uri, self.ALLOWED) == uri

    def test_origin_compare_ignores_case(self):
        validate_redirect_uri("HTTPS://APP.example.com/", self.ALLOWED)

    @pytest.mark.parametrize(
        "uri",
        [
            "https://evil.example.com/",
            "https://app.example.com.evil.io/",
            "http://app.example.com/",
            "http://localhost:3001/",
            "/relative/path",
        ],
    )
    def test_other_origins_forbidden(self, uri):
        with pytest.raises(ForbiddenError):
            validate_redirect_uri(uri, self.ALLOWED)

    def test_markup_rejected(self):
        with pytest.raises(ValidationError):
            validate_redirect_uri('https://app.example.com/"onload', self.ALLOWED)

    def test_length_cap(self):
        with pytest.raises(ValidationError):
            validate_redirect_uri("https://app.example.com/" + "a" * 256, self.ALLOWED)
