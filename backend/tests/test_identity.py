from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.services.phone_session_service import PhoneSessionService
from app.utils.firebase import ExternalIdentity
from app.utils.identity import (
    BearerCredential,
    IdentityResolver,
    LegacyPhoneCredential,
    NoCredential,
    PhoneSessionCredential,
    SourceKind,
    classify,
)
from app.utils.token_codec import TokenCodec


def make_resolver(codec: TokenCodec, identity=None, side_effect=None) -> IdentityResolver:
    firebase = MagicMock()
    firebase.verify = AsyncMock(return_value=identity, side_effect=side_effect)
    return IdentityResolver(get_settings(), codec, firebase)


class TestClassify:
    """Credentials are classified by shape alone."""

    @pytest.mark.parametrize("token", [None, ""])
    def test_absent(self, token):
        assert classify(token) == NoCredential()

    def test_phone_session(self):
        assert classify("session_abc") == PhoneSessionCredential(token="session_abc")

    def test_legacy_phone(self):
        assert classify("phone_966512345678") == LegacyPhoneCredential(
            token="phone_966512345678", digits="966512345678"
        )

    def test_session_prefix_wins_over_everything(self):
        assert isinstance(classify("session_phone_1"), PhoneSessionCredential)

    def test_anything_else_is_bearer(self):
        assert classify("eyJhbGciOi.x.y") == BearerCredential(token="eyJhbGciOi.x.y")


class TestResolve:
    """Tests for turning credentials into principals."""

    @pytest.mark.asyncio
    async def test_no_credential(self, codec):
        assert await make_resolver(codec).resolve(NoCredential(), db=None) is None

    @pytest.mark.asyncio
    async def test_legacy_phone_needs_no_storage(self, codec):
        resolver = make_resolver(codec)
        principal = await resolver.resolve(classify("phone_966512345678"), db=None)

        assert principal.subject_id == "phone_966512345678"
        assert principal.display_phone == "+966512345678"
        assert principal.is_admin is False
        assert principal.source_kind == SourceKind.legacy_phone_token

    @pytest.mark.asyncio
    async def test_legacy_admin_phone(self, codec):
        principal = await make_resolver(codec).resolve(classify("phone_966500000001"), db=None)
        assert principal.is_admin is True

    @pytest.mark.asyncio
    async def test_legacy_phone_without_digits(self, codec):
        assert await make_resolver(codec).resolve(classify("phone_abc"), db=None) is None

    @pytest.mark.asyncio
    async def test_phone_session(self, codec, db_session: AsyncSession):
        session = await PhoneSessionService(db_session).create("phone_966500000001", "+966500000001")
        await db_session.commit()

        principal = await make_resolver(codec).resolve(classify(session.token), db_session)
        assert principal.subject_id == "phone_966500000001"
        assert principal.display_phone == "+966500000001"
        assert principal.is_admin is True
        assert principal.source_kind == SourceKind.phone_session

    @pytest.mark.asyncio
    async def test_unknown_phone_session(self, codec, db_session: AsyncSession):
        resolver = make_resolver(codec)
        assert await resolver.resolve(classify("session_missing"), db_session) is None
        resolver.firebase.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_phone_session_storage_failure_resolves_to_none(self, codec):
        db = MagicMock()
        db.execute = AsyncMock(side_effect=RuntimeError("database is down"))
        assert await make_resolver(codec).resolve(classify("session_abc"), db) is None

    @pytest.mark.asyncio
    async def test_firebase_identity(self, codec):
        identity = ExternalIdentity(uid="fb-uid", email="admin@example.com", phone_number="+966512345678")
        principal = await make_resolver(codec, identity=identity).resolve(
            classify("firebase-id-token"), db=None
        )

        assert principal.subject_id == "fb-uid"
        assert principal.display_email == "admin@example.com"
        assert principal.display_phone == "+966512345678"
        assert principal.is_admin is True
        assert principal.source_kind == SourceKind.external_token

    @pytest.mark.asyncio
    async def test_firebase_admin_claim(self, codec):
        identity = ExternalIdentity(uid="fb-uid", email="user@example.com", is_admin_claim=True)
        principal = await make_resolver(codec, identity=identity).resolve(classify("t"), db=None)
        assert principal.is_admin is True

    @pytest.mark.asyncio
    async def test_falls_back_to_self_signed_token(self, codec):
        token = codec.sign(
            {"sub": "google_1", "email": "user@example.com", "firstName": "Sara", "isAdmin": False}
        )
        resolver = make_resolver(codec, identity=None)
        principal = await resolver.resolve(classify(token), db=None)

        resolver.firebase.verify.assert_awaited_once_with(token)
        assert principal.subject_id == "google_1"
        assert principal.first_name == "Sara"
        assert principal.is_admin is False

    @pytest.mark.asyncio
    async def test_firebase_error_falls_back(self, codec):
        token = codec.sign({"sub": "google_1"})
        resolver = make_resolver(codec, side_effect=RuntimeError("boom"))
        principal = await resolver.resolve(classify(token), db=None)
        assert principal.subject_id == "google_1"

    @pytest.mark.asyncio
    async def test_self_signed_admin_claim_or_allow_list(self, codec):
        resolver = make_resolver(codec)

        by_claim = await resolver.resolve(classify(codec.sign({"sub": "a", "isAdmin": True})), None)
        by_email = await resolver.resolve(
            classify(codec.sign({"sub": "b", "email": "ADMIN@example.com"})), None
        )
        truthy_string = await resolver.resolve(
            classify(codec.sign({"sub": "c", "isAdmin": "yes"})), None
        )

        assert by_claim.is_admin is True
        assert by_email.is_admin is True
        assert truthy_string.is_admin is False

    @pytest.mark.asyncio
    async def test_nothing_verifies(self, codec):
        assert await make_resolver(codec).resolve(classify("not-a-token"), db=None) is None

    @pytest.mark.asyncio
    async def test_self_signed_without_subject(self, codec):
        token = codec.sign({"email": "user@example.com"})
        assert await make_resolver(codec).resolve(classify(token), db=None) is None
