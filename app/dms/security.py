import secrets

from flask import Request, session

OTP_LENGTH = 6
SURVEY_TOKEN_LENGTH = 64


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form, header, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        token = json_data.get("csrf_token") if isinstance(json_data, dict) else None
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


def generate_otp_code(length: int = OTP_LENGTH) -> str:
    """Zero-padded numeric code from the OS CSPRNG."""
    return str(secrets.randbelow(10**length)).zfill(length)


def generate_survey_token(length: int = SURVEY_TOKEN_LENGTH) -> str:
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
    return "".join(secrets.choice(alphabet) for _ in range(length))
