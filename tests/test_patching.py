"""Tests for JSON-patch handling and account field validation."""

from datetime import date, timedelta

import pytest

from accountkit.service.errors import ValidationError
from accountkit.service.patching import apply_patch, parse_operations
from accountkit.service.validation import (
    normalize_email,
    validate_email,
    validate_name,
    validate_username,
)
from accountkit.storage.models import Account


@pytest.fixture
def account():
    return Account.new(
        name="Alice",
        username="alice",
        email="a@x.com",
        password_hash="$argon2id$digest",
        date_of_birth=date(1990, 5, 17),
    )


class TestApplyPatch:
    """Applying operations to an account."""

    def test_replace_fields(self, account):
        updated = apply_patch(
            account,
            [
                {"op": "replace", "path": "/name", "value": "Alice L"},
                {"op": "replace", "path": "/email", "value": "New@X.com"},
                {"op": "add", "path": "/date_of_birth", "value": "1989-12-31"},
            ],
        )
        assert updated.name == "Alice L"
        assert updated.email == "new@x.com"
        assert updated.date_of_birth == date(1989, 12, 31)
        assert updated.password_hash == account.password_hash
        assert account.name == "Alice"

    def test_remove_date_of_birth(self, account):
        updated = apply_patch(account, [{"op": "remove", "path": "/dateOfBirth"}])
        assert updated.date_of_birth is None

    def test_remove_required_field_fails_validation(self, account):
        with pytest.raises(ValidationError):
            apply_patch(account, [{"op": "remove", "path": "/name"}])

    def test_invalid_values_rejected(self, account):
        with pytest.raises(ValidationError):
            apply_patch(account, [{"op": "replace", "path": "/username", "value": "bad name"}])
        future = (date.today() + timedelta(days=2)).isoformat()
        with pytest.raises(ValidationError):
            apply_patch(account, [{"op": "replace", "path": "/dateOfBirth", "value": future}])

    def test_empty_document_is_a_no_op(self, account):
        updated = apply_patch(account, [])
        assert updated == account


class TestParseOperations:
    """Rejecting unsafe or malformed documents."""

    @pytest.mark.parametrize("path", ["/password", "/passwordHash", "/password_hash", "/confirmPassword"])
    def test_credential_paths_rejected(self, path):
        with pytest.raises(ValidationError) as excinfo:
            parse_operations([{"op": "replace", "path": path, "value": "x"}])
        assert "password" in excinfo.value.message

    def test_credential_op_poisons_whole_document(self, account):
        with pytest.raises(ValidationError):
            apply_patch(
                account,
                [
                    {"op": "replace", "path": "/name", "value": "Mallory"},
                    {"op": "replace", "path": "/password", "value": "x"},
                ],
            )

    @pytest.mark.parametrize("path", ["/id", "/emailVerified", "/createdAt"])
    def test_read_only_paths_rejected(self, path):
        with pytest.raises(ValidationError):
            parse_operations([{"op": "replace", "path": path, "value": "x"}])

    @pytest.mark.parametrize(
        "document",
        [
            "not a list",
            [{"op": "move", "path": "/name", "from": "/username"}],
            [{"op": "replace", "path": "name", "value": "x"}],
            [{"op": "replace", "path": "/name/first", "value": "x"}],
            [{"op": "replace", "path": "/nickname", "value": "x"}],
            [{"op": "replace", "path": "/name"}],
            ["replace"],
        ],
    )
    def test_malformed_documents_rejected(self, document):
        with pytest.raises(ValidationError):
            parse_operations(document)


class TestFieldValidation:
    """Field-level rules shared by registration and patching."""

    def test_email_normalized(self):
        assert normalize_email("  A@X.Com ") == "a@x.com"
        assert validate_email("Alice@Example.org") == "alice@example.org"

    @pytest.mark.parametrize("value", ["", "a@", "@x.com", "a@x", "a b@x.com", "a@-x.com"])
    def test_bad_emails(self, value):
        with pytest.raises(ValueError):
            validate_email(value)

    def test_username_rules(self):
        assert validate_username("alice.l-2_x") == "alice.l-2_x"
        with pytest.raises(ValueError):
            validate_username("alice!")
        with pytest.raises(ValueError):
            validate_username("a" * 65)

    def test_name_strips_invisible_characters(self):
        assert validate_name("  Al\u200bice ") == "Alice"
        with pytest.raises(ValueError):
            validate_name("\u200b")
