"""Sign-up, sign-in and role checks.

Users live in the ``users`` table with a werkzeug password hash. The
session only stores the user id; the record is re-read once per request.
Verification and password-reset links carry itsdangerous tokens signed
with the app's ``SECRET_KEY``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import wraps
from typing import Any, Dict, Iterable

from flask import current_app, g, jsonify, session
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from . import mailer, services
from .config import Settings

_logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_VENDOR = "vendor"
ROLE_SALES = "sales"
ROLE_EDITOR = "editor"
ROLE_SUBSCRIBER = "subscriber"
ROLE_USER = "user"

PERMISSION_CAN_LIST = "canList"

ENTER_ROLES = (ROLE_ADMIN, ROLE_VENDOR, ROLE_SALES)
READ_ROLES = (ROLE_ADMIN, ROLE_EDITOR, ROLE_SUBSCRIBER)
EDIT_ROLES = (ROLE_ADMIN, ROLE_EDITOR)
DELETE_ROLES = (ROLE_ADMIN,)

MIN_PASSWORD_LENGTH = 6

LOGIN_PATH = "/authentication/login"
VERIFY_EMAIL_PATH = "/authentication/verify-email"
PLEASE_VERIFY_EMAIL_PATH = "/authentication/please-verify-email"

VERIFY_SALT = "routedesk-verify-email"
RESET_SALT = "routedesk-reset-password"


@dataclass
class Notice:
    level: str
    title: str
    message: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"level": self.level, "title": self.title, "message": self.message}


@dataclass
class AuthResult:
    ok: bool
    notice: Notice | None = None
    redirect: str | None = None
    user: Dict[str, Any] | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "notice": self.notice.to_dict() if self.notice else None,
            "redirect": self.redirect,
            "user": public_user(self.user),
        }


def _error(message: str) -> Notice:
    return Notice("error", "Oops, something went wrong ...", message)


def settings() -> Settings:
    return current_app.config["ROUTEDESK_SETTINGS"]


def _serializer(salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings().secret_key, salt=salt)


def public_user(user: Dict[str, Any] | None) -> Dict[str, Any] | None:
    if user is None:
        return None
    return {key: value for key, value in user.items() if key != "password_hash"}


# Role checks


def check_authorization(user: Dict[str, Any] | None, allowed_roles: Iterable[str]) -> bool:
    if not user:
        return False
    roles = user.get("roles") or []
    return any(role in roles for role in allowed_roles)


def can_enter(user: Dict[str, Any] | None) -> bool:
    return check_authorization(user, ENTER_ROLES)


def can_read(user: Dict[str, Any] | None) -> bool:
    return check_authorization(user, READ_ROLES)


def can_edit(user: Dict[str, Any] | None) -> bool:
    return check_authorization(user, EDIT_ROLES)


def can_delete(user: Dict[str, Any] | None) -> bool:
    return check_authorization(user, DELETE_ROLES)


def primary_role(user: Dict[str, Any] | None) -> str | None:
    roles = (user or {}).get("roles") or []
    return roles[0] if roles else None


# Session


def current_user() -> Dict[str, Any] | None:
    if "current_user" in g:
        return g.current_user
    user_id = session.get("user_id")
    user = services.get_user(user_id) if user_id is not None else None
    if user_id is not None and user is None:
        session.pop("user_id", None)
    g.current_user = user
    return user


def is_logged_in() -> bool:
    return current_user() is not None


def _start_session(user: Dict[str, Any]) -> None:
    session.clear()
    session["user_id"] = user["id"]
    g.current_user = user


def sign_out() -> AuthResult:
    session.clear()
    g.pop("current_user", None)
    return AuthResult(ok=True, redirect=LOGIN_PATH)


# Sign-in / sign-up


def sign_in(email: str, password: str) -> AuthResult:
    user = services.get_user_by_email(email or "")
    if user is None or not user.get("password_hash") or not check_password_hash(user["password_hash"], password or ""):
        return AuthResult(ok=False, notice=_error("Invalid email or password."))

    if not user.get("email_verified"):
        return AuthResult(
            ok=False,
            notice=Notice(
                "warning",
                "Oops, your account has not been verified",
                "Verify your email address to continue.",
            ),
            redirect=PLEASE_VERIFY_EMAIL_PATH,
        )
    return get_access_level(user)


def get_access_level(user: Dict[str, Any]) -> AuthResult:
    role = primary_role(user)
    if role not in ENTER_ROLES:
        _logger.info("User %s with role %s denied access", user.get("id"), role)
        result = sign_out()
        result.ok = False
        result.notice = Notice(
            "warning",
            "Oops, your account has no access to this system",
            "If this is a mistake, please contact the site administrator.",
        )
        return result

    _start_session(user)
    return AuthResult(ok=True, redirect=f"/dashboard/{role}", user=user)


def sign_up(form: Dict[str, Any]) -> AuthResult:
    email = str(form.get("email") or "").strip()
    password = str(form.get("password") or "")
    if not email or "@" not in email:
        return AuthResult(ok=False, notice=_error("A valid email address is required."))
    if len(password) < MIN_PASSWORD_LENGTH:
        return AuthResult(
            ok=False,
            notice=_error(f"The password must be at least {MIN_PASSWORD_LENGTH} characters long."),
        )
    if services.get_user_by_email(email) is not None:
        return AuthResult(ok=False, notice=_error("An account with this email already exists."))

    values = {
        "email": email,
        "password_hash": generate_password_hash(password),
        "display_name": form.get("full_name") or None,
        "phone_number": form.get("phone_number") or None,
        "student_id": form.get("student_id") or None,
        "photo_url": None,
        "roles": [ROLE_USER],
        "permissions": [PERMISSION_CAN_LIST],
        "email_verified": False,
    }
    user_id = services.create_user(values)
    user = {"id": user_id, **values}
    send_verification_mail(user)
    return AuthResult(
        ok=True,
        notice=Notice("info", "Perfect!", "The verification email has been sent."),
        redirect=VERIFY_EMAIL_PATH,
        user=user,
    )


def send_verification_mail(user: Dict[str, Any]) -> bool:
    token = _serializer(VERIFY_SALT).dumps(user["id"])
    link = f"{settings().public_base_url}/api/auth/verify-email/{token}"
    return mailer.send_mail(
        settings(),
        user["email"],
        "Verify your email address",
        f"Open this link to verify your account:\n{link}",
    )


def password_fragment(user: Dict[str, Any]) -> str:
    """Tail of the stored hash; reset links stop working once it changes."""
    return str(user.get("password_hash") or "")[-16:]


def _load_token(token: str, salt: str) -> Any:
    return _serializer(salt).loads(token, max_age=settings().token_max_age_seconds)


def verify_email(token: str) -> AuthResult:
    try:
        user_id = _load_token(token, VERIFY_SALT)
    except SignatureExpired:
        return AuthResult(ok=False, notice=_error("The verification link has expired."))
    except BadSignature:
        return AuthResult(ok=False, notice=_error("The verification link is not valid."))

    user = services.get_user(user_id)
    if user is None:
        return AuthResult(ok=False, notice=_error("The account no longer exists."))
    services.update_user(user_id, {"email_verified": True})
    user = {**user, "email_verified": True}
    return AuthResult(ok=True, notice=Notice("info", "Done!", "Your email has been verified."), redirect=LOGIN_PATH, user=user)


def forgot_password(email: str) -> AuthResult:
    notice = Notice(
        "info",
        "Done!",
        "An email with the instructions to recover your password has been sent to your account.",
    )
    user = services.get_user_by_email(email or "")
    if user is None:
        _logger.info("Password reset requested for unknown email")
        return AuthResult(ok=True, notice=notice)

    token = _serializer(RESET_SALT).dumps({"id": user["id"], "pw": password_fragment(user)})
    link = f"{settings().public_base_url}/authentication/reset-password?token={token}"
    mailer.send_mail(
        settings(),
        user["email"],
        "Reset your password",
        f"Open this link to choose a new password:\n{link}",
    )
    return AuthResult(ok=True, notice=notice)


def reset_password(token: str, password: str) -> AuthResult:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        return AuthResult(
            ok=False,
            notice=_error(f"The password must be at least {MIN_PASSWORD_LENGTH} characters long."),
        )
    try:
        payload = _load_token(token, RESET_SALT)
    except SignatureExpired:
        return AuthResult(ok=False, notice=_error("The reset link has expired."))
    except BadSignature:
        return AuthResult(ok=False, notice=_error("The reset link is not valid."))

    if not isinstance(payload, dict):
        return AuthResult(ok=False, notice=_error("The reset link is not valid."))

    user_id = payload.get("id")
    user = services.get_user(user_id)
    if user is None:
        return AuthResult(ok=False, notice=_error("The account no longer exists."))
    if payload.get("pw") != password_fragment(user):
        return AuthResult(ok=False, notice=_error("The reset link has already been used."))
    services.update_user(user_id, {"password_hash": generate_password_hash(password)})
    return AuthResult(ok=True, notice=Notice("info", "Done!", "Your password has been updated."), redirect=LOGIN_PATH)


# Route guards


def login_required(view):
    @wraps(view)
    def decorated(*args, **kwargs):
        if current_user() is None:
            return jsonify({"error": "Authentication required"}), 401
        return view(*args, **kwargs)

    return decorated


def role_required(*roles: str):
    def decorator(view):
        @wraps(view)
        def decorated(*args, **kwargs):
            user = current_user()
            if user is None:
                return jsonify({"error": "Authentication required"}), 401
            if not check_authorization(user, roles):
                return jsonify({"error": "Your role cannot perform this action"}), 403
            return view(*args, **kwargs)

        return decorated

    return decorator
