"""Accounts and the signed-in session.

``IdentityProvider`` is the account backend (users table, bcrypt password
hashes, JWT custom and id tokens). ``IdentitySession`` is one client's view of
it: who is signed in right now, and a registry that broadcasts every sign-in
and sign-out to its subscribers.
"""
from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .auth import (
    ALGO,
    CUSTOM_TOKEN_AUDIENCE,
    CUSTOM_TOKEN_MINUTES,
    JWT_SECRET,
    create_token,
    decode_token,
)
from .claims import ReleaseTransaction, release_all
from .errors import IdentityError, NotAuthenticated
from .events import EventRegistry, Subscription
from .models import Account
from .schemas import CustomTokenCredentials, ProviderCredentials, parse_credentials

logger = logging.getLogger(__name__)

# {"google.com": "<hs256 secret>", ...}
PROVIDER_SECRETS: Dict[str, str] = json.loads(os.getenv("IDENTITY__PROVIDERS", "{}"))


@dataclass(frozen=True)
class User:
    uid: str
    email: Optional[str] = None
    provider_id: str = "password"


# bcrypt rejects longer passwords
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str) -> str:
    if len(plain.encode()) > MAX_PASSWORD_BYTES:
        raise IdentityError("invalid-password", f"Passwords are limited to {MAX_PASSWORD_BYTES} bytes.")
    return bcrypt.hashpw(plain.encode(), bcrypt.gensalt()).decode()


def verify_password(plain: str, hashed: str) -> bool:
    if len(plain.encode()) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(plain.encode(), hashed.encode())


def _to_user(account: Account) -> User:
    return User(uid=account.uid, email=account.email, provider_id=account.provider_id or "password")


class IdentityProvider:
    def __init__(self, session_factory, secret: str = JWT_SECRET, providers: Optional[Dict[str, str]] = None):
        self._sessions = session_factory
        self._secret = secret
        self._providers = PROVIDER_SECRETS if providers is None else providers

    async def _first(self, stmt) -> Optional[Account]:
        try:
            async with self._sessions() as db:
                res = await db.execute(stmt)
                return res.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise IdentityError("internal-error", str(exc)) from exc

    async def get_user(self, uid: str) -> Optional[User]:
        account = await self._first(select(Account).where(Account.uid == uid))
        return _to_user(account) if account else None

    async def create_user(self, email: str, password: str) -> User:
        email = email.strip().lower()
        if await self._first(select(Account).where(Account.email == email)):
            raise IdentityError("email-already-in-use", "The email address is already in use by another account.")
        account = Account(uid=uuid.uuid4().hex, email=email, password_hash=hash_password(password))
        try:
            async with self._sessions() as db:
                db.add(account)
                await db.commit()
        except IntegrityError as exc:
            raise IdentityError("email-already-in-use", "The email address is already in use by another account.") from exc
        except SQLAlchemyError as exc:
            raise IdentityError("internal-error", str(exc)) from exc
        logger.info("created account %s", account.uid)
        return _to_user(account)

    async def delete_user(self, uid: str) -> None:
        try:
            async with self._sessions() as db:
                account = await db.get(Account, uid)
                if account is None:
                    raise IdentityError("user-not-found", "There is no user record corresponding to this identifier.")
                await db.delete(account)
                await db.commit()
        except SQLAlchemyError as exc:
            raise IdentityError("internal-error", str(exc)) from exc
        logger.info("deleted account %s", uid)

    async def sign_in_with_password(self, email: str, password: str) -> User:
        account = await self._first(select(Account).where(Account.email == email.strip().lower()))
        if account is None or not account.password_hash or not verify_password(password, account.password_hash):
            raise IdentityError("invalid-credential", "The email or password is invalid.")
        return _to_user(account)

    async def sign_in_with_custom_token(self, token: str) -> User:
        try:
            claims = decode_token(token, audience=CUSTOM_TOKEN_AUDIENCE, secret=self._secret)
        except JWTError as exc:
            raise IdentityError("invalid-custom-token", "The custom token format is incorrect.") from exc
        user = await self.get_user(claims.get("sub", ""))
        if user is None:
            raise IdentityError("user-not-found", "There is no user record corresponding to this identifier.")
        return user

    async def sign_in_with_id_token(self, id_token: str, provider_id: str) -> User:
        secret = self._providers.get(provider_id)
        if secret is None:
            raise IdentityError("operation-not-allowed", f"Sign-in with {provider_id} is not enabled.")
        try:
            claims = jwt.decode(id_token, secret, algorithms=[ALGO], options={"verify_aud": False})
        except JWTError as exc:
            raise IdentityError("invalid-credential", "The supplied auth credential is malformed or has expired.") from exc
        subject = claims.get("sub")
        if not subject:
            raise IdentityError("invalid-credential", "The id token has no subject.")
        account = await self._first(
            select(Account).where(Account.provider_id == provider_id, Account.provider_uid == subject)
        )
        if account is not None:
            return _to_user(account)
        # first sign-in through this provider creates the linked account
        account = Account(uid=uuid.uuid4().hex, email=None, provider_id=provider_id, provider_uid=subject)
        try:
            async with self._sessions() as db:
                db.add(account)
                await db.commit()
        except SQLAlchemyError as exc:
            raise IdentityError("internal-error", str(exc)) from exc
        logger.info("linked %s account %s", provider_id, account.uid)
        return User(uid=account.uid, email=claims.get("email"), provider_id=provider_id)

    async def sign_in(self, credentials: Any) -> User:
        creds = parse_credentials(credentials)
        if isinstance(creds, CustomTokenCredentials):
            return await self.sign_in_with_custom_token(creds.custom_token)
        if isinstance(creds, ProviderCredentials):
            return await self.sign_in_with_id_token(creds.id_token, creds.provider_id)
        return await self.sign_in_with_password(creds.email, creds.password)

    async def create_custom_token(self, uid: str) -> str:
        if await self.get_user(uid) is None:
            raise IdentityError("user-not-found", "There is no user record corresponding to this identifier.")
        return create_token(uid, minutes=CUSTOM_TOKEN_MINUTES, audience=CUSTOM_TOKEN_AUDIENCE, secret=self._secret)

    def issue_id_token(self, user: User) -> str:
        return create_token(user.uid, secret=self._secret, email=user.email, provider_id=user.provider_id)


class IdentitySession:
    def __init__(self, provider: IdentityProvider, store, release: Optional[ReleaseTransaction] = None):
        self._provider = provider
        self._store = store
        self._release = release or ReleaseTransaction(store)
        self._auth_states: EventRegistry[Optional[User]] = EventRegistry(replay_last=True)
        self._user: Optional[User] = None

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    @property
    def user_id(self) -> Optional[str]:
        return self._user.uid if self._user else None

    def require_user(self) -> User:
        if self._user is None:
            raise NotAuthenticated()
        return self._user

    def _transition(self, user: Optional[User]) -> None:
        self._user = user
        self._auth_states.publish(user)

    def start(self) -> None:
        """Publish the initial auth state; nobody is signed in yet."""
        self._transition(self._user)

    def on_auth_state_changed(self) -> Subscription[Optional[User]]:
        return self._auth_states.subscribe()

    def on_first_login(self) -> Subscription[User]:
        return self._auth_states.subscribe(accept=lambda user: user is not None, once=True)

    async def login(self, credentials: Any) -> User:
        # shape errors never reach the provider
        user = await self._provider.sign_in(parse_credentials(credentials))
        self._transition(user)
        return user

    async def logout(self) -> None:
        self._transition(None)

    async def create_account(self, email: str, password: str) -> User:
        user = await self._provider.create_user(email, password)
        self._transition(user)
        return user

    async def delete_account(self) -> None:
        """Release every claimed device, then delete the account itself.

        If any release fails the account is left in place and the error is
        raised; releases that already succeeded are not undone.
        """
        user = self.require_user()
        await release_all(self._store, self._release, user.uid)
        await self._provider.delete_user(user.uid)
        self._transition(None)

    async def create_custom_token(self) -> str:
        user = self.require_user()
        return await self._provider.create_custom_token(user.uid)

    async def refresh(self) -> Optional[User]:
        """Re-check the signed-in account; a vanished account signs out."""
        if self._user is None:
            return None
        user = await self._provider.get_user(self._user.uid)
        if user is None:
            logger.info("account %s no longer exists, signing out", self._user.uid)
            self._transition(None)
        return user

    def close(self) -> None:
        self._auth_states.close_all()
