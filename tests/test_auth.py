import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from auth import AuthService, InvalidCredentials, Principal, verify_password
from database import Base
from models import User
from results import Ok, ValidationErr
from sessions import decode_session_token, issue_session_token


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_register_hashes_password_and_normalizes_email() -> None:
    session = make_session()
    result = AuthService(session).register(
        {"email": "Ana@Example.com", "password": "password123", "name": "Ana"}
    )

    assert isinstance(result, Ok)
    user = result.data
    assert user.email == "ana@example.com"
    assert user.name == "Ana"
    assert user.password_hash != "password123"
    assert verify_password("password123", user.password_hash)


def test_register_rejects_taken_email() -> None:
    session = make_session()
    auth = AuthService(session)
    assert isinstance(
        auth.register({"email": "ana@example.com", "password": "password123"}), Ok
    )

    result = auth.register({"email": "ANA@example.com", "password": "different1"})

    assert result == ValidationErr({"email": ["Email already registered"]})
    assert session.scalar(select(func.count(User.id))) == 1


def test_register_reports_field_errors() -> None:
    session = make_session()
    result = AuthService(session).register({"email": "nope", "password": "short"})

    assert isinstance(result, ValidationErr)
    assert set(result.fields) == {"email", "password"}
    assert session.scalar(select(func.count(User.id))) == 0


def test_authorize_returns_principal_for_valid_credentials() -> None:
    session = make_session()
    auth = AuthService(session)
    registered = auth.register(
        {"email": "ana@example.com", "password": "password123", "name": "Ana"}
    )

    principal = auth.authorize(" ANA@example.com", "password123")

    assert principal == Principal(
        user_id=registered.data.id, email="ana@example.com", name="Ana"
    )


def test_authorize_rejects_bad_credentials_with_one_message() -> None:
    session = make_session()
    auth = AuthService(session)
    auth.register({"email": "ana@example.com", "password": "password123"})

    with pytest.raises(InvalidCredentials) as wrong_password:
        auth.authorize("ana@example.com", "password124")
    with pytest.raises(InvalidCredentials) as unknown_email:
        auth.authorize("bob@example.com", "password123")
    with pytest.raises(InvalidCredentials):
        auth.authorize("", "")

    assert str(wrong_password.value) == str(unknown_email.value)
    assert str(wrong_password.value) == "Invalid email or password"


def test_session_token_round_trip_and_rejections() -> None:
    token = issue_session_token("user-1")

    assert decode_session_token(token) == "user-1"
    assert decode_session_token(token + "x") is None
    assert decode_session_token("garbage") is None
    assert decode_session_token(None) is None
    assert decode_session_token(token, max_age_hours=-1) is None


def test_principal_from_token_requires_existing_user() -> None:
    session = make_session()
    auth = AuthService(session)
    user = auth.register({"email": "ana@example.com", "password": "password123"}).data

    principal = auth.principal_from_token(auth.issue_token(Principal.from_user(user)))
    assert principal is not None
    assert principal.user_id == user.id

    assert auth.principal_from_token(issue_session_token("missing-user")) is None
    assert auth.principal_from_token(None) is None
