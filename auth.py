import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from config import get_settings
from models import User
from results import Err, ErrorKind, Ok, Result, ValidationErr
from schemas import LoginIn, RegisterIn, validate
from sessions import decode_session_token, issue_session_token

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=get_settings().bcrypt_rounds,
)


class InvalidCredentials(Exception):
    pass


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str
    name: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Principal":
        return cls(user_id=user.id, email=user.email, name=user.name)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _user_by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.email == email))

    def register(self, data: Mapping[str, Any]) -> Result:
        payload, errors = validate(RegisterIn, data)
        if errors:
            return ValidationErr(errors)

        if self._user_by_email(payload.email):
            return ValidationErr({"email": ["Email already registered"]})

        user = User(
            email=payload.email,
            name=payload.name,
            password_hash=hash_password(payload.password),
        )
        try:
            self.session.add(user)
            self.session.commit()
            self.session.refresh(user)
        except IntegrityError:
            self.session.rollback()
            return ValidationErr({"email": ["Email already registered"]})
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("register_failed")
            return Err(ErrorKind.internal, "Something went wrong. Please try again.")

        logger.info(f"user_registered: user_id={user.id}")
        return Ok(data=user)

    def authorize(self, email: str, password: str) -> Principal:
        payload, errors = validate(LoginIn, {"email": email, "password": password})
        if errors:
            raise InvalidCredentials("Invalid email or password")

        user = self._user_by_email(payload.email)
        if user is None:
            # keeps timing equal to the known-email path
            pwd_context.dummy_verify()
            logger.warning("login_denied: reason=unknown_email")
            raise InvalidCredentials("Invalid email or password")

        if not verify_password(payload.password, user.password_hash):
            logger.warning(f"login_denied: user_id={user.id} reason=bad_password")
            raise InvalidCredentials("Invalid email or password")

        logger.info(f"login_succeeded: user_id={user.id}")
        return Principal.from_user(user)

    def issue_token(self, principal: Principal) -> str:
        return issue_session_token(principal.user_id)

    def principal_from_token(self, token: Optional[str]) -> Optional[Principal]:
        user_id = decode_session_token(token)
        if user_id is None:
            return None
        user = self.session.get(User, user_id)
        if user is None:
            return None
        return Principal.from_user(user)
