from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from webauthn.helpers import bytes_to_base64url

from showauth.api.schemas import (
    ApiTokenCreateRequest,
    AppleCallbackRequest,
    ChangePasswordRequest,
    DeleteAccountRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    PasskeyFinishRequest,
    PasskeyLoginBeginRequest,
    PasskeyRegisterFinishRequest,
    PasskeyRenameRequest,
    PasskeySignupBeginRequest,
    RecoverAccountRequest,
    RegisterRequest,
    TokenRequest,
)
from showauth.config import Settings
from showauth.logging import get_correlation_id, get_logger
from showauth.service.api_tokens import is_api_token
from showauth.service.errors import AuthError, AuthErrorCode, RateLimitError
from showauth.service.runtime import check_rate_limit, get_runtime
from showauth.service.tokens import SignupConsent, TokenPurpose
from showauth.storage.models import Account, PasskeyCredential, utcnow

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "auth_token"
CONSENT_COOKIE = "oauth_signup_consent"
CLI_CALLBACK_COOKIE = "cli_callback_id"
CONSENT_COOKIE_MAX_AGE = 600
CLI_CALLBACK_COOKIE_MAX_AGE = 300
CLI_TOKEN_LIFETIME = timedelta(hours=24)

DELETION_SCHEDULED_MESSAGE = (
    "Your account has been scheduled for deletion. "
    "You have 30 days to recover your account by contacting support."
)
RECOVERY_REQUEST_MESSAGE = (
    "If an account exists with this email and is eligible for recovery, "
    "a recovery email has been sent."
)
MAGIC_LINK_SENT_MESSAGE = "If an account exists with this email, a magic link has been sent."


def _ok(message: str, data: Any = None) -> Envelope:
    return Envelope(
        success=True, message=message, request_id=get_correlation_id() or "", data=data
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _request_token(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    return _bearer_token(authorization) or cookie_token or None


def _set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        max_age=settings.session_max_age,
        path=settings.session_path,
        domain=settings.session_domain,
        secure=settings.session_secure,
        httponly=settings.session_http_only,
        samesite=settings.session_same_site,
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path=settings.session_path,
        domain=settings.session_domain,
        secure=settings.session_secure,
        httponly=settings.session_http_only,
        samesite=settings.session_same_site,
    )


def _issue_session(response: Response, account: Account) -> dict:
    runtime = get_runtime()
    token = runtime.tokens.create_session_token(account)
    _set_session_cookie(response, token, runtime.settings)
    return {"token": token, "user": account.to_public_dict()}


def _notify_if_created(background_tasks: BackgroundTasks, account: Account, created: bool) -> None:
    if created:
        background_tasks.add_task(get_runtime().notifier.notify_new_user, account)


def _unauthorized() -> AuthError:
    return AuthError(AuthErrorCode.UNAUTHORIZED, "Authentication required", status_code=401)


class RateLimitInfo:
    """Bucket state echoed in ``X-RateLimit-*`` response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _enforce_rate_limit(
    key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket or raise a 429."""
    allowed, remaining, retry_after = check_rate_limit(get_runtime(), key, limit, window_seconds)
    info = RateLimitInfo(limit, remaining, window_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0], retry_after=retry_after)
        raise RateLimitError(retry_after, limit=limit)
    if response is not None and limit > 0:
        info.apply_headers(response)
    return info


def auth_rate_limit(request: Request, response: Response) -> None:
    limit = get_runtime().settings.auth_rate_limit_per_minute
    _enforce_rate_limit(f"auth:{_client_ip(request)}", limit, 60, response=response)


def passkey_rate_limit(request: Request, response: Response) -> None:
    limit = get_runtime().settings.passkey_rate_limit_per_minute
    _enforce_rate_limit(f"passkey:{_client_ip(request)}", limit, 60, response=response)


AUTH_LIMITED = [Depends(auth_rate_limit)]
PASSKEY_LIMITED = [Depends(passkey_rate_limit)]


def get_optional_account(
    authorization: Optional[str] = Header(None),
    auth_token: Optional[str] = Cookie(None),
) -> Optional[Account]:
    """Resolve the session to an account, or None when there is no usable session."""
    token = _request_token(authorization, auth_token)
    if not token:
        return None
    runtime = get_runtime()
    if is_api_token(token):
        try:
            return runtime.api_tokens.validate(token)
        except AuthError as exc:
            logger.info("api_token_session_rejected", error_code=exc.error_code)
            return None
    try:
        claims = runtime.tokens.validate_token(TokenPurpose.SESSION, token)
    except AuthError as exc:
        logger.info("session_rejected", error_code=exc.error_code)
        return None
    account = runtime.store.get_account(claims.account_id) if claims.account_id else None
    if account is None or account.deleted_at is not None or not account.is_active:
        return None
    return account


def get_current_account(
    account: Optional[Account] = Depends(get_optional_account),
) -> Account:
    if account is None:
        raise _unauthorized()
    return account


def _passkey_dict(credential: PasskeyCredential) -> dict:
    return {
        "id": credential.id,
        "credential_id": bytes_to_base64url(credential.credential_id),
        "display_name": credential.display_name,
        "transports": list(credential.transports),
        "backup_eligible": credential.backup_eligible,
        "backup_state": credential.backup_state,
        "created_at": credential.created_at.isoformat(),
        "last_used_at": credential.last_used_at.isoformat() if credential.last_used_at else None,
    }


# -- password sessions --------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"], dependencies=AUTH_LIMITED)
def login(body: LoginRequest, response: Response):
    """Sign in with email and password.

    Sets the ``auth_token`` cookie and also returns the token for clients
    that send it as a Bearer header.

    Raises:
        ACCOUNT_LOCKED: after five consecutive failures, for 15 minutes
        INVALID_CREDENTIALS: unknown email, inactive account or wrong password
    """
    runtime = get_runtime()
    account = runtime.auth.authenticate_with_password(body.email, body.password)
    return _ok("Login successful", _issue_session(response, account))


@router.post("/auth/register", response_model=Envelope, tags=["auth"], dependencies=AUTH_LIMITED)
def register(body: RegisterRequest, response: Response, background_tasks: BackgroundTasks):
    """Create a password account and sign it in.

    Raises:
        USER_EXISTS: the email already belongs to an account
        VALIDATION_FAILED: the password is too weak
    """
    runtime = get_runtime()
    consent = None
    if body.terms_accepted:
        consent = SignupConsent(
            terms_accepted=True,
            terms_version=body.terms_version,
            privacy_version=body.privacy_version,
            accepted_at=utcnow(),
        )
    account = runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        consent=consent,
    )
    _notify_if_created(background_tasks, account, True)
    return _ok(
        "Registration successful and you are now logged in",
        _issue_session(response, account),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(response: Response):
    # Session tokens are stateless; logging out only drops the cookie
    _clear_session_cookie(response, get_runtime().settings)
    return _ok("Logout successful")


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
def refresh(
    response: Response,
    authorization: Optional[str] = Header(None),
    auth_token: Optional[str] = Cookie(None),
):
    """Exchange a current or recently expired session for a fresh one.

    Raises:
        401: no session token was presented or its account is gone
        TOKEN_INVALID: the token expired longer ago than the refresh grace
    """
    runtime = get_runtime()
    token = _request_token(authorization, auth_token)
    if not token:
        raise _unauthorized()
    claims = runtime.tokens.validate_session_lenient(token)
    account = runtime.store.get_account(claims.account_id) if claims.account_id else None
    if account is None or account.deleted_at is not None or not account.is_active:
        raise _unauthorized()
    return _ok("Token refreshed", _issue_session(response, account))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
def profile(account: Account = Depends(get_current_account)):
    return _ok("Profile retrieved", {"user": account.to_public_dict()})


@router.post("/auth/cli-token", response_model=Envelope, tags=["auth"])
def cli_token(account: Account = Depends(get_current_account)):
    """Issue a 24 hour session token for the admin command-line tool.

    Raises:
        403: the caller is not an admin
    """
    if not account.is_admin:
        raise AuthError(
            AuthErrorCode.UNAUTHORIZED,
            "CLI tokens are only available for admin users",
            status_code=403,
        )
    runtime = get_runtime()
    token = runtime.tokens.create_session_token(account, expires_in=CLI_TOKEN_LIFETIME)
    logger.info("cli_token_issued", account_id=account.id)
    return _ok(
        "CLI token generated successfully. This token expires in 24 hours.",
        {"token": token, "expires_in": int(CLI_TOKEN_LIFETIME.total_seconds())},
    )


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
def change_password(body: ChangePasswordRequest, account: Account = Depends(get_current_account)):
    get_runtime().auth.change_password(account.id, body.current_password, body.new_password)
    return _ok("Password changed successfully")


# -- admin API tokens ----------------------------------------------------------


def _require_admin(account: Account) -> None:
    if not account.is_admin:
        raise AuthError(AuthErrorCode.UNAUTHORIZED, "Admin access required", status_code=403)


@router.post("/admin/tokens", response_model=Envelope, tags=["admin"])
def create_api_token(body: ApiTokenCreateRequest, account: Account = Depends(get_current_account)):
    """Issue a long-lived admin API token.

    The plaintext token appears only in this response.

    Raises:
        403: the caller is not an admin
        VALIDATION_FAILED: the requested lifetime exceeds the maximum
    """
    _require_admin(account)
    issued = get_runtime().api_tokens.create(
        account, description=body.description, expiration_days=body.expiration_days
    )
    return _ok(
        "API token created. Store it now; it will not be shown again.",
        issued.to_public_dict(),
    )


@router.get("/admin/tokens", response_model=Envelope, tags=["admin"])
def list_api_tokens(account: Account = Depends(get_current_account)):
    _require_admin(account)
    tokens = get_runtime().api_tokens.list_tokens(account)
    return _ok("API tokens retrieved", {"tokens": [t.to_public_dict() for t in tokens]})


@router.delete("/admin/tokens/{token_id}", response_model=Envelope, tags=["admin"])
def revoke_api_token(token_id: int, account: Account = Depends(get_current_account)):
    _require_admin(account)
    get_runtime().api_tokens.revoke(account, token_id)
    return _ok("API token revoked")


# -- email verification and magic links ----------------------------------------


@router.post("/auth/verify-email/send", response_model=Envelope, tags=["auth"])
def send_verification_email(account: Account = Depends(get_current_account)):
    """Email a verification link to the signed-in account.

    Raises:
        NO_EMAIL: the account has no email address
        ALREADY_VERIFIED: nothing to do
        SERVICE_UNAVAILABLE: email delivery is not configured or failed
    """
    get_runtime().lifecycle.send_verification_email(account)
    return _ok("Verification email sent. Please check your inbox.")


@router.post("/auth/verify-email/confirm", response_model=Envelope, tags=["auth"])
def confirm_verification_email(body: TokenRequest):
    account, changed = get_runtime().lifecycle.confirm_email_verification(body.token)
    message = (
        "Email verified successfully! You can now submit shows."
        if changed
        else "Email is already verified"
    )
    return _ok(message, {"user": account.to_public_dict()})


@router.post(
    "/auth/magic-link/send", response_model=Envelope, tags=["auth"],
    dependencies=AUTH_LIMITED,
)
def send_magic_link(body: EmailRequest):
    """Email a one-click sign-in link.

    The response is identical whether or not the address belongs to an
    eligible account.

    Raises:
        SERVICE_UNAVAILABLE: email delivery is not configured
    """
    get_runtime().lifecycle.send_magic_link(body.email)
    return _ok(MAGIC_LINK_SENT_MESSAGE)


@router.post(
    "/auth/magic-link/verify", response_model=Envelope, tags=["auth"],
    dependencies=AUTH_LIMITED,
)
def verify_magic_link(body: TokenRequest, response: Response):
    account = get_runtime().lifecycle.verify_magic_link(body.token)
    return _ok("Login successful", _issue_session(response, account))


# -- account lifecycle ----------------------------------------------------------


@router.get("/auth/account/deletion-summary", response_model=Envelope, tags=["account"])
def deletion_summary(account: Account = Depends(get_current_account)):
    summary = get_runtime().lifecycle.get_deletion_summary(account)
    return _ok(
        "Deletion summary retrieved",
        {
            "shows_count": summary.shows_count,
            "saved_shows_count": summary.saved_shows_count,
            "passkeys_count": summary.passkeys_count,
            "has_password": summary.has_password,
        },
    )


@router.post("/auth/account/delete", response_model=Envelope, tags=["account"])
def delete_account(
    body: DeleteAccountRequest,
    response: Response,
    account: Account = Depends(get_current_account),
):
    """Soft-delete the signed-in account and end the session.

    Raises:
        VALIDATION_FAILED: password missing, or the account has no password
        INVALID_CREDENTIALS: wrong password
    """
    runtime = get_runtime()
    result = runtime.lifecycle.delete_account(account, body.password, body.reason)
    _clear_session_cookie(response, runtime.settings)
    return _ok(
        DELETION_SCHEDULED_MESSAGE,
        {
            "deletion_date": result.deletion_date.isoformat(),
            "grace_period_days": result.grace_period_days,
        },
    )


@router.get("/auth/account/export", tags=["account"])
def export_account(account: Account = Depends(get_current_account)):
    """Download everything stored about the signed-in account as a JSON file."""
    data = get_runtime().lifecycle.export_data(account)
    return JSONResponse(
        content=data,
        headers={
            "Content-Disposition": f'attachment; filename="showauth-export-{account.id}.json"'
        },
    )


@router.post(
    "/auth/recover-account", response_model=Envelope, tags=["account"],
    dependencies=AUTH_LIMITED,
)
def recover_account(body: RecoverAccountRequest, response: Response):
    """Reactivate a soft-deleted password account within its recovery window.

    Raises:
        INVALID_CREDENTIALS: unknown email or wrong password
        ACCOUNT_ACTIVE: the account was never deleted
        ACCOUNT_NOT_RECOVERABLE: the 30 day window has passed
        NO_PASSWORD: the account signs in without a password; use email recovery
    """
    account = get_runtime().lifecycle.recover_account(body.email, body.password)
    return _ok("Account recovered successfully. Welcome back!", _issue_session(response, account))


@router.post(
    "/auth/recover-account/request", response_model=Envelope, tags=["account"],
    dependencies=AUTH_LIMITED,
)
def request_account_recovery(body: EmailRequest):
    sent = get_runtime().lifecycle.request_account_recovery(body.email)
    if not sent:
        return _ok(RECOVERY_REQUEST_MESSAGE)
    return _ok("Recovery email sent. Please check your inbox.")


@router.post(
    "/auth/recover-account/confirm", response_model=Envelope, tags=["account"],
    dependencies=AUTH_LIMITED,
)
def confirm_account_recovery(body: TokenRequest, response: Response):
    account = get_runtime().lifecycle.confirm_account_recovery(body.token)
    return _ok("Account recovered successfully. Welcome back!", _issue_session(response, account))


# -- OAuth ----------------------------------------------------------------------


@router.get("/auth/login/{provider}", tags=["oauth"], dependencies=AUTH_LIMITED)
def oauth_login(
    provider: str,
    cli_callback: Optional[str] = Query(None, max_length=2048),
    signup_intent: bool = Query(False),
    terms_accepted: bool = Query(False),
    terms_version: Optional[str] = Query(None, max_length=50),
    privacy_version: Optional[str] = Query(None, max_length=50),
):
    """Redirect the browser to the provider's consent screen.

    A signup consent and a CLI callback id, when present, ride along in
    short-lived HTTP-only cookies and are consumed by the callback.

    Raises:
        400: unknown provider, missing signup consent or non-local CLI callback
    """
    runtime = get_runtime()
    begin = runtime.oauth.begin(
        provider,
        cli_callback=cli_callback,
        signup_intent=signup_intent,
        terms_accepted=terms_accepted,
        terms_version=terms_version,
        privacy_version=privacy_version,
    )
    redirect = RedirectResponse(begin.authorization_url, status_code=307)
    if begin.consent_token:
        redirect.set_cookie(
            CONSENT_COOKIE,
            begin.consent_token,
            max_age=CONSENT_COOKIE_MAX_AGE,
            path="/",
            secure=runtime.settings.session_secure,
            httponly=True,
            samesite="lax",
        )
    if begin.cli_callback_id:
        redirect.set_cookie(
            CLI_CALLBACK_COOKIE,
            begin.cli_callback_id,
            max_age=CLI_CALLBACK_COOKIE_MAX_AGE,
            path="/",
            secure=runtime.settings.session_secure,
            httponly=True,
            samesite="lax",
        )
    return redirect


@router.get("/auth/callback/{provider}", tags=["oauth"], dependencies=AUTH_LIMITED)
async def oauth_callback(
    provider: str,
    background_tasks: BackgroundTasks,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    oauth_signup_consent: Optional[str] = Cookie(None),
    cli_callback_id: Optional[str] = Cookie(None),
):
    """Finish a provider login and redirect to the frontend or the CLI.

    Failures never raise; they redirect with an ``error`` query parameter.
    """
    runtime = get_runtime()
    outcome = await runtime.oauth.complete(
        provider,
        code=code,
        state=state,
        cli_callback_id=cli_callback_id,
        consent_token=oauth_signup_consent,
    )
    redirect = RedirectResponse(outcome.redirect_url, status_code=307)
    redirect.delete_cookie(CONSENT_COOKIE, path="/", httponly=True, samesite="lax")
    redirect.delete_cookie(CLI_CALLBACK_COOKIE, path="/", httponly=True, samesite="lax")
    if outcome.session_token:
        _set_session_cookie(redirect, outcome.session_token, runtime.settings)
    if outcome.account is not None:
        _notify_if_created(background_tasks, outcome.account, outcome.created)
    return redirect


@router.get("/auth/oauth/accounts", response_model=Envelope, tags=["oauth"])
def list_oauth_accounts(account: Account = Depends(get_current_account)):
    linked = get_runtime().auth.list_oauth_accounts(account)
    return _ok("OAuth accounts retrieved", {"accounts": [o.to_public_dict() for o in linked]})


@router.delete("/auth/oauth/accounts/{provider}", response_model=Envelope, tags=["oauth"])
def unlink_oauth_account(provider: str, account: Account = Depends(get_current_account)):
    """Remove a linked provider.

    Raises:
        VALIDATION_FAILED: the provider is not linked, or it is the only
            remaining way to sign in
    """
    get_runtime().auth.unlink_oauth_account(account, provider)
    return _ok("OAuth account unlinked successfully")


@router.post(
    "/auth/apple/callback", response_model=Envelope, tags=["oauth"],
    dependencies=AUTH_LIMITED,
)
def apple_callback(
    body: AppleCallbackRequest, response: Response, background_tasks: BackgroundTasks
):
    """Sign in with an Apple identity token from a native client.

    Raises:
        VALIDATION_FAILED: no identity token
        TOKEN_INVALID: signature, issuer, audience or expiry check failed
        SERVICE_UNAVAILABLE: Sign in with Apple is not configured
    """
    account, created = get_runtime().apple.sign_in(
        body.identity_token, first_name=body.first_name, last_name=body.last_name
    )
    _notify_if_created(background_tasks, account, created)
    return _ok("Login successful", _issue_session(response, account))


# -- passkeys -------------------------------------------------------------------


@router.post("/auth/passkey/register/begin", response_model=Envelope, tags=["passkeys"])
def passkey_register_begin(account: Optional[Account] = Depends(get_optional_account)):
    return _ok("Registration options created", get_runtime().passkeys.begin_registration(account))


@router.post("/auth/passkey/register/finish", response_model=Envelope, tags=["passkeys"])
def passkey_register_finish(
    body: PasskeyRegisterFinishRequest,
    account: Optional[Account] = Depends(get_optional_account),
):
    """Store the authenticator produced by a registration ceremony.

    Raises:
        UNAUTHORIZED: no session, or the challenge was issued to another account
        VALIDATION_FAILED: unknown or expired challenge, or a bad attestation
    """
    credential = get_runtime().passkeys.finish_registration(
        account, body.challenge_id, body.credential, body.display_name
    )
    return _ok("Passkey registered successfully", {"credential": _passkey_dict(credential)})


@router.post(
    "/auth/passkey/login/begin", response_model=Envelope, tags=["passkeys"],
    dependencies=PASSKEY_LIMITED,
)
def passkey_login_begin(body: Optional[PasskeyLoginBeginRequest] = None):
    email = body.email if body else None
    return _ok("Login options created", get_runtime().passkeys.begin_login(email))


@router.post(
    "/auth/passkey/login/finish", response_model=Envelope, tags=["passkeys"],
    dependencies=PASSKEY_LIMITED,
)
def passkey_login_finish(body: PasskeyFinishRequest, response: Response):
    """Verify an assertion and sign the account in.

    Raises:
        VALIDATION_FAILED: unknown or expired challenge
        INVALID_CREDENTIALS: unknown credential, bad signature, inactive
            account or a sign count that did not increase
    """
    account = get_runtime().passkeys.finish_login(body.challenge_id, body.credential)
    return _ok("Login successful", _issue_session(response, account))


@router.post(
    "/auth/passkey/signup/begin", response_model=Envelope, tags=["passkeys"],
    dependencies=PASSKEY_LIMITED,
)
def passkey_signup_begin(body: PasskeySignupBeginRequest):
    options = get_runtime().passkeys.begin_signup(
        body.email,
        display_name=body.display_name,
        terms_accepted=body.terms_accepted,
        terms_version=body.terms_version,
        privacy_version=body.privacy_version,
    )
    return _ok("Registration options created", options)


@router.post(
    "/auth/passkey/signup/finish", response_model=Envelope, tags=["passkeys"],
    dependencies=PASSKEY_LIMITED,
)
def passkey_signup_finish(
    body: PasskeyFinishRequest, response: Response, background_tasks: BackgroundTasks
):
    account = get_runtime().passkeys.finish_signup(body.challenge_id, body.credential)
    _notify_if_created(background_tasks, account, True)
    return _ok("Account created successfully", _issue_session(response, account))


@router.get("/auth/passkey/credentials", response_model=Envelope, tags=["passkeys"])
def passkey_credentials(account: Optional[Account] = Depends(get_optional_account)):
    credentials = get_runtime().passkeys.list_credentials(account)
    return _ok("Credentials retrieved", {"credentials": [_passkey_dict(c) for c in credentials]})


@router.delete("/auth/passkey/credentials/{passkey_id}", response_model=Envelope, tags=["passkeys"])
def delete_passkey_credential(
    passkey_id: int, account: Optional[Account] = Depends(get_optional_account)
):
    get_runtime().passkeys.delete_credential(account, passkey_id)
    return _ok("Passkey deleted successfully")


@router.patch("/auth/passkey/credentials/{passkey_id}", response_model=Envelope, tags=["passkeys"])
def rename_passkey_credential(
    passkey_id: int,
    body: PasskeyRenameRequest,
    account: Optional[Account] = Depends(get_optional_account),
):
    credential = get_runtime().passkeys.rename_credential(account, passkey_id, body.display_name)
    return _ok("Passkey updated successfully", {"credential": _passkey_dict(credential)})
