"""Tests for the authorization gate: credential checks and scope enforcement."""

import pytest

from socialgate.service.auth import AuthorizationGate
from socialgate.service.errors import BadRequestError, ForbiddenError, NotFoundError
from socialgate.storage.models import Credential, Operation, ResourceLocator, TokenScope

TEST_TABLE = "DataTable"

ARETHA = ResourceLocator("USA", "Franklin,Aretha")


class RecordingStore:
    """Wraps a store and records every token-gated call."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def get(self, *args, **kwargs):
        self.calls.append("get")
        return self.inner.get(*args, **kwargs)

    def merge(self, *args, **kwargs):
        self.calls.append("merge")
        return self.inner.merge(*args, **kwargs)


@pytest.fixture
def recording(store):
    store.put_entity(TEST_TABLE, ARETHA.partition, ARETHA.row, {"Friends": ""})
    return RecordingStore(store)


@pytest.fixture
def gate(recording, tokens):
    gate = AuthorizationGate(recording, tokens, table=TEST_TABLE)
    gate.register_credential("user", "user", ARETHA.partition, ARETHA.row)
    return gate


class TestRequestToken:
    def test_returns_token_and_locator(self, gate):
        token, locator = gate.request_token("user", "user", TokenScope.READ)
        assert locator == ARETHA
        assert "sp=r" in token

    def test_unknown_user_and_bad_password_are_both_not_found(self, gate):
        with pytest.raises(NotFoundError) as unknown:
            gate.request_token("nobody", "user", TokenScope.READ)
        with pytest.raises(NotFoundError) as wrong:
            gate.request_token("user", "wrong", TokenScope.READ)
        assert unknown.value.message == wrong.value.message

    def test_credential_without_binding_is_bad_request(self, gate, recording):
        pwd_hash, algo = gate._hash_password("pw")
        recording.inner.save_credential(Credential("unbound", pwd_hash, algo))
        with pytest.raises(BadRequestError):
            gate.request_token("unbound", "pw", TokenScope.READ)

    def test_password_is_stored_hashed(self, gate, recording):
        credential = recording.inner.get_credential("user")
        assert credential.password_hash != "user"
        assert credential.password_algo == "argon2id"


class TestAuthorizeAndForward:
    def test_read_scope_update_rejected_before_dispatch(self, gate, recording):
        token, locator = gate.request_token("user", "user", TokenScope.READ)
        with pytest.raises(ForbiddenError):
            gate.merge_profile(token, TokenScope.READ, locator, {"Status": "x"})
        assert recording.calls == []

    def test_read_only_token_claimed_as_update_is_forbidden(self, gate, recording):
        token, locator = gate.request_token("user", "user", TokenScope.READ)
        with pytest.raises(ForbiddenError):
            gate.merge_profile(token, TokenScope.READ_UPDATE, locator, {"Status": "x"})
        assert recording.calls == ["merge"]

    def test_update_token_merges(self, gate):
        token, locator = gate.request_token("user", "user", TokenScope.READ_UPDATE)
        record = gate.merge_profile(token, TokenScope.READ_UPDATE, locator, {"Status": "Hi"})
        assert record.properties["Status"] == "Hi"

    def test_token_for_other_profile_is_not_found(self, gate, recording):
        recording.inner.put_entity(TEST_TABLE, "Canada", "Quin,Tegan", {})
        token, _ = gate.request_token("user", "user", TokenScope.READ)
        with pytest.raises(NotFoundError):
            gate.read_profile(token, TokenScope.READ, ResourceLocator("Canada", "Quin,Tegan"))

    def test_garbage_token_is_not_found(self, gate):
        with pytest.raises(NotFoundError):
            gate.authorize_and_forward("junk", TokenScope.READ, Operation.READ, ARETHA)

    def test_scope_of(self, gate):
        token, _ = gate.request_token("user", "user", TokenScope.READ)
        assert gate.scope_of(token) is TokenScope.READ
        assert gate.scope_of("junk") is None

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer abc", "abc"),
            ("Basic abc", None),
            (None, None),
            ("Bearer ", None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert AuthorizationGate.extract_bearer(header) == expected
