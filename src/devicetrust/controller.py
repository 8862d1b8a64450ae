"""Async controller that drives the login flow.

The controller owns one ``Snapshot`` and moves it through ``flow.transition``
in response to user input and backend answers. Network calls run in worker
threads via ``asyncio.to_thread`` and are bounded by a safety timeout, so a
hung request only ever costs the user an inline error.
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Set

from . import metrics
from .config import FlowCfg
from .device_identity import DeviceIdentity
from .errors import ApiError, DeviceTrustError, normalize_api_error
from .flow import (
    AuthSucceeded,
    CheckingAvailability,
    CreateHandleRequired,
    DeviceCheckCompleted,
    DeviceRegistrationRequested,
    ErrorCleared,
    ErrorRaised,
    ExistingAccountDetected,
    FlowContext,
    FlowState,
    HandleRequired,
    PhoneRequired,
    PinRejected,
    PinRequested,
    RegistrationOffered,
    SelectLoginMethod,
    ShowLoginOptions,
    Snapshot,
    StartRegistration,
    SuggestionsOffered,
    VerificationStarted,
    is_allowed,
    transition,
)
from .http_client import TrustedHttpClient
from .navigation import Navigator
from .storage import (
    ACCOUNT_ALREADY_EXISTS_KEY,
    AUTHENTICATED_USER_KEY,
    CURRENT_HANDLE_KEY,
    DEVICE_GUID_KEY,
    DEVICE_REGISTRATION_FLOW_KEY,
    DEVICE_REGISTRATION_KEY,
    DEVICE_SESSION_KEY,
    HANDLE_FIRST_KEY,
    LOGGING_OUT_KEY,
    LOGOUT_STATE_KEY,
    MASKED_PHONE_KEY,
    PENDING_DEVICE_PATH_KEY,
    PENDING_VERIFICATION_KEY,
    REDIRECT_COUNT_KEY,
    REGISTRATION_PHONE_KEY,
    VERIFICATION_IN_PROGRESS_KEY,
    StorageAdapter,
    StorageScope,
)
from .validators import (
    CODE_LENGTH,
    INVALID_HANDLE_MESSAGE,
    INVALID_REGISTRATION_HANDLE_MESSAGE,
    PIN_LENGTH,
    digits_only,
    full_phone_number,
    invalid_phone_message,
    is_handle,
    local_handle_suggestions,
    mask_handle,
    mask_phone,
    validate_handle,
    validate_phone,
    validate_registration_handle,
)

log = logging.getLogger(__name__)

LOCAL = StorageScope.LOCAL
SESSION = StorageScope.SESSION

CONNECTION_TIMEOUT_MESSAGE = "Connection timeout. Please try again."
CONNECTION_ERROR_MESSAGE = "Connection error. Please try again."
REQUEST_TIMEOUT_MESSAGE = "Request timed out. Please try again."
HANDLE_TAKEN_MESSAGE = "This handle is already taken. Please choose another one."
PHONE_REQUIRED_MESSAGE = "Phone number required for registration. Please try again."
HANDLE_REGISTERED_MESSAGE = "This handle is already registered. Choose another handle or login."
PHONE_REGISTERED_MESSAGE = (
    "This phone number is already registered. Use a different number or login."
)


class WebAuthnCapability:
    """Platform passkey support, injected by the host.

    The default implementation reports no support, which turns both passkey
    touch points into no-ops.
    """

    def is_supported(self) -> bool:
        return False

    async def register(self) -> bool:
        """Create a credential for the signed-in user."""
        raise NotImplementedError

    async def authenticate(self, identifier: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Sign in with a stored credential.

        Returns:
            The server's authentication response, or None if the user cancelled
        """
        raise NotImplementedError


def _server_error(exc: Exception, default: str) -> str:
    if isinstance(exc, ApiError):
        return str(exc.payload.get("error") or exc.payload.get("message") or default)
    return default


class AuthFlowController:
    """Drives the login screens from device check to redirect."""

    def __init__(
        self,
        identity: DeviceIdentity,
        http: TrustedHttpClient,
        storage: StorageAdapter,
        cfg: Optional[FlowCfg] = None,
        navigator: Optional[Navigator] = None,
        webauthn: Optional[WebAuthnCapability] = None,
    ):
        """Initialize the controller.

        Args:
            identity: Device identity shared with the HTTP client
            http: Client used for every backend call
            storage: Storage adapter for flow flags
            cfg: Flow configuration
            navigator: Location tracker for redirects (defaults to the client's)
            webauthn: Optional passkey capability
        """
        self.identity = identity
        self.http = http
        self.storage = storage
        self.cfg = cfg or FlowCfg()
        self.navigator = navigator or http.navigator
        self.webauthn = webauthn or WebAuthnCapability()
        self.snapshot = Snapshot()
        self.is_loading = False
        self.auto_submit = True
        self.verification_code = ""
        self.pin = ""
        self.country_code = self.cfg.default_country_code
        self._background_tasks: Set[asyncio.Task] = set()
        self.log = log

    @property
    def state(self) -> FlowState:
        return self.snapshot.state

    @property
    def context(self) -> FlowContext:
        return self.snapshot.context

    # Plumbing -----------------------------------------------------------------

    def _apply(self, event) -> Snapshot:
        previous = self.snapshot.state
        self.snapshot = transition(self.snapshot, event)
        metrics.flow_transitions_total.labels(state=self.snapshot.state.value).inc()
        if previous != self.snapshot.state:
            self.log.info("[FLOW] %s -> %s", previous.value, self.snapshot.state.value)
            if self.snapshot.state == FlowState.VERIFICATION:
                self.auto_submit = True
        if self.snapshot.context.error:
            self.log.debug("[FLOW] Error shown: %s", self.snapshot.context.error)
        return self.snapshot

    def _loading_expired(self) -> None:
        if self.is_loading:
            self.log.warning(
                "[FLOW] Loading exceeded %.0fs, releasing the screen",
                self.cfg.global_loading_timeout,
            )
            self.is_loading = False

    @contextmanager
    def _loading(self):
        self.is_loading = True
        watchdog = asyncio.get_running_loop().call_later(
            self.cfg.global_loading_timeout, self._loading_expired
        )
        try:
            yield
        finally:
            watchdog.cancel()
            self.is_loading = False

    async def _call(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        safety_timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Run a blocking client call in a thread, bounded by a safety timeout.

        Raises:
            asyncio.TimeoutError: If the safety timeout fired first
            DeviceTrustError: On API, transport or session failures
        """
        call = self.http.get if method == "GET" else self.http.post
        return await asyncio.wait_for(
            asyncio.to_thread(call, path, data, timeout),
            timeout=safety_timeout or self.cfg.safety_timeout,
        )

    def _session_flag(self, key: str) -> bool:
        return self.storage.get(SESSION, key) == "true"

    def _user_identifier(self) -> str:
        ctx = self.context
        return ctx.handle or ctx.identifier or ctx.phone

    def _is_registration(self, registration: Optional[bool]) -> bool:
        if registration is not None:
            return registration
        return self.context.is_registration or self.state == FlowState.REGISTRATION

    def _remember_existing_account(self, account_type: str, identifier: str, data: Dict) -> None:
        handle = data.get("handle") or (identifier if account_type == "handle" else "")
        record = {
            "type": account_type,
            account_type: identifier,
            "handle": handle,
            "masked_handle": data.get("masked_handle") or mask_handle(handle),
            "masked_phone": data.get("masked_phone")
            or (mask_phone(identifier) if account_type == "phone" else ""),
            "pin_available": bool(data.get("pin_available")),
        }
        self.storage.set(SESSION, ACCOUNT_ALREADY_EXISTS_KEY, json.dumps(record))
        self._apply(
            ExistingAccountDetected(
                identifier=identifier,
                account_type=account_type,
                masked_handle=record["masked_handle"],
                masked_phone=record["masked_phone"],
                pin_available=record["pin_available"],
            )
        )

    def _start_passkey_registration(self) -> None:
        if not (self.cfg.webauthn_enabled and self.webauthn.is_supported()):
            self.log.debug("[AUTH] WebAuthn not supported or disabled, skipping registration")
            return
        task = asyncio.create_task(self._register_passkey())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _register_passkey(self) -> None:
        try:
            await self.webauthn.register()
            self.log.info("[AUTH] Passkey registration completed")
        except Exception as exc:
            self.log.error("[AUTH] Passkey registration failed: %s", exc)

    async def _complete_authentication(
        self, data: Dict[str, Any], outcome: str, register_passkey: bool = False
    ) -> None:
        self.identity.store_device_session_data(data)
        self.storage.set(LOCAL, AUTHENTICATED_USER_KEY, "true")
        self.storage.remove(SESSION, VERIFICATION_IN_PROGRESS_KEY)
        self.storage.remove(SESSION, REDIRECT_COUNT_KEY)
        if register_passkey:
            self._start_passkey_registration()

        redirect_to = data.get("redirect_to") or self.cfg.dashboard_path
        self._apply(AuthSucceeded(redirect_to=redirect_to, handle=data.get("handle") or ""))
        metrics.record_auth_outcome(outcome)
        self.log.info("[AUTH] Authenticated via %s, redirecting to %s", outcome, redirect_to)

        await asyncio.sleep(self.cfg.redirect_delay)
        self.navigator.go(redirect_to)

    # Device check -------------------------------------------------------------

    def _should_skip_device_check(self) -> bool:
        if self.navigator.path == self.cfg.dashboard_path:
            return True
        if self._session_flag(LOGGING_OUT_KEY) or self.identity.is_authenticated():
            return True
        return bool(
            self.storage.get(SESSION, DEVICE_SESSION_KEY)
            and self.storage.get(SESSION, CURRENT_HANDLE_KEY)
        )

    async def check_device(self) -> FlowState:
        """Ask the backend whether this device is already trusted.

        Returns:
            The flow state after the check
        """
        if self.state not in (FlowState.CHECKING, FlowState.LOGIN_OPTIONS) or self.is_loading:
            return self.state
        if "/logout" in self.navigator.path or "logged_out" in self.navigator.query:
            self.log.debug("[FLOW] Logout confirmation page, skipping device check")
            return self.state

        if self.storage.get(LOCAL, LOGOUT_STATE_KEY) == "true":
            self.log.info("[FLOW] Logout detected, showing login options")
            self.identity.clear_device_session()
            self.storage.remove(LOCAL, LOGOUT_STATE_KEY)
            self.storage.remove(SESSION, LOGGING_OUT_KEY)
            self._apply(ShowLoginOptions(device_not_registered=True))
            return self.state

        if self._should_skip_device_check():
            self.log.debug("[FLOW] Already authenticated, skipping device check")
            return self.state

        if self._session_flag(VERIFICATION_IN_PROGRESS_KEY):
            self.log.info("[FLOW] Verification in progress, restoring code entry")
            handle = self.storage.get(SESSION, CURRENT_HANDLE_KEY) or ""
            if self.state == FlowState.CHECKING:
                self._apply(
                    VerificationStarted(
                        welcome_message=f"Verify it's you, {handle}" if handle else "",
                        handle=handle,
                        identifier=handle,
                        masked_phone=self.storage.get(SESSION, MASKED_PHONE_KEY) or "",
                    )
                )
            return self.state

        with self._loading():
            try:
                data = await self._call(
                    "POST",
                    "check_device",
                    {},
                    timeout=self.cfg.device_check_timeout,
                    safety_timeout=self.cfg.device_check_safety_timeout,
                )
            except asyncio.TimeoutError:
                self.log.warning("[FLOW] Device check timed out")
                self._apply(DeviceCheckCompleted("error", error=CONNECTION_TIMEOUT_MESSAGE))
                return self.state
            except DeviceTrustError as exc:
                self.log.warning("[FLOW] Device check failed: %s", exc)
                self._apply(DeviceCheckCompleted("error", error=CONNECTION_ERROR_MESSAGE))
                return self.state

        if data.get("redirecting"):
            return self.state

        status = data.get("status")
        self.log.info("[FLOW] Device check status: %s", status)
        if status == "logged_out":
            self.identity.clear_device_session()
            self._apply(DeviceCheckCompleted("logged_out"))
        elif status == "authenticated":
            self.identity.store_device_session_data(data)
            self.storage.set(LOCAL, AUTHENTICATED_USER_KEY, "true")
            self.storage.remove(SESSION, REDIRECT_COUNT_KEY)
            redirect_to = data.get("redirect_to") or self.cfg.dashboard_path
            self._apply(
                DeviceCheckCompleted(
                    "authenticated", handle=data.get("handle") or "", redirect_to=redirect_to
                )
            )
            metrics.record_auth_outcome("device_check")
            self.navigator.go(redirect_to)
        elif status == "needs_quick_verification":
            self._apply(
                DeviceCheckCompleted(
                    "quick_verification",
                    handle=data.get("handle") or "",
                    masked_phone=data.get("masked_phone") or "",
                    pin_available=bool(data.get("pin_available")),
                )
            )
        elif status == "show_options":
            self._apply(
                DeviceCheckCompleted(
                    "show_options",
                    device_not_registered=bool(data.get("device_not_registered")),
                )
            )
        else:
            if data.get("device_guid"):
                self.storage.set(SESSION, DEVICE_GUID_KEY, str(data["device_guid"]))
            self._apply(DeviceCheckCompleted("unknown", device_not_registered=True))
        return self.state

    # Identifier entry ---------------------------------------------------------

    def select_login_method(self, method: str, registration: bool = False) -> None:
        """Switch between handle and phone entry, optionally into registration."""
        if method not in ("handle", "phone"):
            raise ValueError(f"Unknown login method: {method}")
        if self.is_loading:
            return
        if registration:
            self._apply(StartRegistration(method=method))
        else:
            self._apply(SelectLoginMethod(method))

    def start_registration(self, method: str = "") -> None:
        if self.is_loading:
            return
        self._apply(StartRegistration(method=method))

    async def submit_identifier(self, value: str, registration: Optional[bool] = None) -> FlowState:
        """Look up a handle or phone number and route to the right screen.

        Args:
            value: Raw handle or national phone number
            registration: Registration intent; defaults to the current screen's

        Returns:
            The flow state after routing
        """
        if self.is_loading:
            return self.state
        registering = self._is_registration(registration)
        value = (value or "").strip()
        use_handle = is_handle(value) or self.context.login_method == "handle"

        if use_handle:
            if not validate_handle(value):
                self._apply(ErrorRaised(INVALID_HANDLE_MESSAGE))
                return self.state
            identifier = value
            path, params = "check_handle", {"handle": value}
        else:
            if not validate_phone(value, self.country_code):
                self._apply(ErrorRaised(invalid_phone_message(self.country_code)))
                return self.state
            identifier = full_phone_number(value, self.country_code)
            path, params = "check_phone", {"phone": identifier}

        if registering:
            if self.state != FlowState.REGISTRATION:
                self._apply(StartRegistration(method="handle" if use_handle else "phone"))
            self._apply(CheckingAvailability(identifier))

        with self._loading():
            try:
                check = await self._call(
                    "GET", path, params, timeout=self.cfg.device_check_timeout
                )
            except asyncio.TimeoutError:
                self._identifier_error(REQUEST_TIMEOUT_MESSAGE)
                return self.state
            except DeviceTrustError as exc:
                self.log.warning("[FLOW] Identifier check failed: %s", exc)
                self._identifier_error(_server_error(exc, "Verification failed"))
                return self.state

            if not use_handle:
                self.storage.set(SESSION, REGISTRATION_PHONE_KEY, identifier)

            if check.get("exists"):
                if registering and use_handle:
                    await self.fetch_handle_suggestions(identifier, HANDLE_REGISTERED_MESSAGE)
                    return self.state
                if registering:
                    self._identifier_error(PHONE_REGISTERED_MESSAGE)
                    return self.state
                await self._route_existing_identifier(identifier, use_handle, check)
                return self.state

            if registering:
                if use_handle:
                    self._apply(PhoneRequired(handle=identifier))
                else:
                    self._apply(HandleRequired(phone=identifier))
            else:
                self.log.info("[FLOW] %s not found, offering registration", identifier)
                self._apply(
                    RegistrationOffered(identifier, "handle" if use_handle else "phone")
                )
        return self.state

    def _identifier_error(self, message: str) -> None:
        if self.state == FlowState.HANDLE_STATUS:
            self._apply(StartRegistration(error=message))
        else:
            self._apply(ErrorRaised(message))

    async def _route_existing_identifier(
        self, identifier: str, use_handle: bool, check: Dict[str, Any]
    ) -> None:
        recognized = bool(check.get("is_your_device"))
        confidence = check.get("device_confidence") or "low"
        pin_available = bool(check.get("pin_available"))
        handle = identifier if use_handle else (check.get("handle") or "")
        self.log.info(
            "[FLOW] Device recognition: recognized=%s confidence=%s score=%s pin=%s",
            recognized,
            confidence,
            check.get("confidence_score", 0),
            pin_available,
        )

        if recognized and confidence == "high":
            try:
                fast = await self._call(
                    "POST",
                    "fast_authenticate",
                    {"identifier": identifier},
                    timeout=self.cfg.device_check_timeout,
                )
            except (asyncio.TimeoutError, DeviceTrustError) as exc:
                self.log.warning("[FLOW] Fast authentication failed: %s", exc)
                fast = {}
            status = fast.get("status")
            if status == "authenticated":
                await self._complete_authentication(fast, "fast_path")
                return
            if status == "needs_pin_verification":
                self._apply(
                    PinRequested(
                        identifier=identifier,
                        handle=fast.get("handle") or handle,
                        welcome_message=f"Welcome back, {fast.get('handle') or handle}!",
                    )
                )
                return
            if status == "verification_needed":
                self._apply(
                    VerificationStarted(
                        welcome_message=f"Verify it's you, {handle}" if handle else "",
                        identifier=identifier,
                        handle=handle,
                        phone="" if use_handle else identifier,
                        masked_phone=fast.get("masked_phone") or check.get("masked_phone") or "",
                    )
                )
                return

        if recognized and confidence == "medium" and pin_available:
            self._apply(
                PinRequested(
                    identifier=identifier,
                    handle=handle,
                    welcome_message=f"Welcome back, {handle}!" if handle else "Welcome back",
                )
            )
            return

        self._remember_existing_account("handle" if use_handle else "phone", identifier, check)

    def continue_registration(self) -> None:
        """Turn a not-found identifier into a fresh registration."""
        if self.is_loading:
            return
        identifier = self.context.identifier
        if is_handle(identifier):
            self._apply(PhoneRequired(handle=identifier))
        else:
            self.storage.set(SESSION, REGISTRATION_PHONE_KEY, identifier)
            self._apply(HandleRequired(phone=identifier))

    # Device registration ------------------------------------------------------

    def open_device_registration(self) -> None:
        """Show the bind-this-device confirmation for a recognized account."""
        if self.is_loading:
            return
        self._apply(DeviceRegistrationRequested())

    async def register_device(self) -> FlowState:
        """Bind this device to the account by SMS verification."""
        if self.is_loading:
            return self.state
        identifier = self._user_identifier()
        if not identifier:
            self._apply(ErrorRaised("Please enter your handle or phone number first"))
            return self.state
        handle = self.context.handle or (identifier if is_handle(identifier) else "")

        self._apply(
            VerificationStarted(
                welcome_message=f"Verify it's you, {handle}" if handle else "Verify it's you",
                identifier=identifier,
                handle=handle,
                error=None if self.state == FlowState.VERIFICATION else "",
            )
        )
        self.storage.set(SESSION, DEVICE_REGISTRATION_KEY, "true")
        self.storage.set(SESSION, DEVICE_REGISTRATION_FLOW_KEY, "true")
        self.storage.set(SESSION, PENDING_VERIFICATION_KEY, "true")
        if is_handle(identifier):
            self.storage.set(SESSION, HANDLE_FIRST_KEY, "true")

        payload = {
            "identifier": identifier,
            "device_registration": True,
            "auth": {"identifier": identifier, "device_registration": True},
        }
        with self._loading():
            try:
                data = await self._call("POST", "verify_login", payload)
            except asyncio.TimeoutError:
                self._apply(ErrorRaised(REQUEST_TIMEOUT_MESSAGE))
                return self.state
            except DeviceTrustError as exc:
                self.log.error("[FLOW] Device registration failed: %s", exc)
                self._apply(ErrorRaised("Failed to register device. Please try again."))
                return self.state

        status = data.get("status")
        if status == "verification_needed":
            if data.get("pending_device_path"):
                self.storage.set(SESSION, PENDING_DEVICE_PATH_KEY, data["pending_device_path"])
            handle = data.get("handle") or handle
            if handle:
                self.storage.set(SESSION, CURRENT_HANDLE_KEY, handle)
            self.storage.set(SESSION, VERIFICATION_IN_PROGRESS_KEY, "true")
            self._apply(
                VerificationStarted(
                    welcome_message=f"Verify it's you, {handle}" if handle else "",
                    handle=handle,
                    masked_phone=data.get("masked_phone") or "",
                    phone=data.get("masked_phone") or "",
                    error=None,
                )
            )
        elif status == "error":
            self._apply(
                ErrorRaised(data.get("message") or "Registration failed. Please try again.")
            )
        else:
            self.log.warning("[FLOW] Unexpected registration status: %s", status)
            self._apply(ErrorRaised("Unable to process request. Please try again."))
        return self.state

    # Account alert and suggestions --------------------------------------------

    def not_my_account(self) -> None:
        """Leave an identifier the user does not own."""
        if self.is_loading:
            return
        self.storage.remove(SESSION, ACCOUNT_ALREADY_EXISTS_KEY)
        identifier = self.context.identifier
        suggestions = SuggestionsOffered(tuple(local_handle_suggestions(identifier)), identifier)
        if is_handle(identifier) and is_allowed(self.state, suggestions):
            self._apply(suggestions)
        else:
            self._apply(ShowLoginOptions())

    async def fetch_handle_suggestions(
        self, handle: str, error: str = "", phone_collected: bool = False
    ) -> List[str]:
        """Ask the backend for free handles near ``handle`` and offer them.

        Args:
            handle: The handle that turned out to be taken
            error: Message shown above the suggestions
            phone_collected: Whether the registration already has its phone

        Returns:
            The offered suggestions, local ones when the backend has none
        """
        try:
            data = await self._call(
                "GET", "suggest_handles", {"handle": handle}, timeout=self.cfg.device_check_timeout
            )
            suggestions = [s for s in data.get("suggestions") or [] if isinstance(s, str)]
        except (asyncio.TimeoutError, DeviceTrustError) as exc:
            self.log.warning("[FLOW] Handle suggestions unavailable: %s", exc)
            suggestions = []
        if not suggestions:
            suggestions = local_handle_suggestions(handle)

        event = SuggestionsOffered(tuple(suggestions), handle, error, phone_collected)
        if is_allowed(self.state, event):
            self._apply(event)
        elif error:
            self._apply(ErrorRaised(error))
        return suggestions

    async def choose_suggested_handle(self, handle: str) -> FlowState:
        """Continue the registration with a suggested handle."""
        if self.is_loading:
            return self.state
        handle = (handle or "").strip()
        if not validate_registration_handle(handle):
            self._apply(ErrorRaised(INVALID_REGISTRATION_HANDLE_MESSAGE))
            return self.state
        if self.context.phone_collected:
            return await self.submit_handle(handle)
        self._apply(PhoneRequired(handle=handle))
        return self.state

    # Registration steps -------------------------------------------------------

    async def submit_phone(self, phone: str) -> FlowState:
        """Collect the phone number of a handle-first registration."""
        if self.is_loading:
            return self.state
        if not validate_phone(phone, self.country_code):
            self._apply(ErrorRaised(invalid_phone_message(self.country_code)))
            return self.state
        identifier = full_phone_number(phone, self.country_code)
        handle = self.context.handle
        handle_first = self.context.is_handle_first
        self.storage.set(SESSION, HANDLE_FIRST_KEY, "true" if handle_first else "false")

        with self._loading():
            try:
                check = await self._call(
                    "GET", "check_phone", {"phone": identifier}, timeout=self.cfg.device_check_timeout
                )
            except (asyncio.TimeoutError, DeviceTrustError) as exc:
                self.log.warning("[FLOW] Phone existence check failed, continuing: %s", exc)
                check = {}
            if check.get("exists"):
                self.log.info("[FLOW] Phone already registered, showing account alert")
                self._remember_existing_account("phone", identifier, check)
                return self.state

            payload = {
                "identifier": identifier,
                "auth": {"identifier": identifier, "handle": handle, "handle_first": handle_first},
            }
            try:
                data = await self._call("POST", "verify_login", payload)
            except asyncio.TimeoutError:
                self._apply(ErrorRaised(REQUEST_TIMEOUT_MESSAGE))
                return self.state
            except DeviceTrustError as exc:
                error = normalize_api_error(exc, "Failed to send verification code")
                if error["reason"] == "phone_exists":
                    payload_data = exc.payload if isinstance(exc, ApiError) else {}
                    self._remember_existing_account("phone", identifier, payload_data)
                else:
                    self._apply(ErrorRaised(_server_error(exc, error["message"])))
                return self.state

        self.storage.set(SESSION, REGISTRATION_PHONE_KEY, identifier)
        self._apply(
            VerificationStarted(
                welcome_message="Verify your number",
                identifier=identifier,
                phone=identifier,
                masked_phone=data.get("masked_phone") or mask_phone(identifier),
            )
        )
        return self.state

    async def submit_handle(self, handle: str) -> FlowState:
        """Create the handle of a phone-first registration."""
        if self.is_loading:
            return self.state
        handle = (handle or "").strip()
        if not validate_registration_handle(handle):
            self._apply(ErrorRaised(INVALID_REGISTRATION_HANDLE_MESSAGE))
            return self.state
        phone = self.context.phone or self.storage.get(SESSION, REGISTRATION_PHONE_KEY)
        if not phone:
            self._apply(ErrorRaised(PHONE_REQUIRED_MESSAGE))
            return self.state
        handle_first = self.context.is_handle_first or self._session_flag(HANDLE_FIRST_KEY)

        payload = {
            "handle": handle,
            "phone": phone,
            "require_verification": True,
            "handle_first": handle_first,
        }
        with self._loading():
            try:
                data = await self._call("POST", "create_handle", payload)
            except asyncio.TimeoutError:
                self._apply(ErrorRaised(REQUEST_TIMEOUT_MESSAGE))
                return self.state
            except DeviceTrustError as exc:
                error = normalize_api_error(exc, "Failed to create handle")
                if error["reason"] == "handle_exists":
                    await self.fetch_handle_suggestions(
                        handle, HANDLE_TAKEN_MESSAGE, phone_collected=True
                    )
                else:
                    self._apply(ErrorRaised(_server_error(exc, error["message"])))
                return self.state

            status = data.get("status")
            if status == "authenticated":
                await self._complete_authentication(data, "registration")
            elif status == "verification_needed" or data.get("phone") or data.get("masked_phone"):
                self.verification_code = ""
                self._apply(
                    VerificationStarted(
                        welcome_message=data.get("message") or "Verify your phone number",
                        identifier=phone,
                        phone=phone,
                        handle=handle,
                        masked_phone=data.get("masked_phone") or mask_phone(phone),
                    )
                )
            elif status == "error":
                self._apply(ErrorRaised(data.get("message") or "Failed to create handle"))
            else:
                self.log.warning("[FLOW] Unexpected create_handle status: %s", status)
        return self.state

    # SMS verification ---------------------------------------------------------

    def _verification_payload(self, code: str) -> Dict[str, Any]:
        ctx = self.context
        payload: Dict[str, Any] = {"code": code, "auth": {"code": code}}
        if ctx.phone:
            payload["phone"] = payload["auth"]["phone"] = ctx.phone
        if ctx.handle:
            payload["handle"] = payload["auth"]["handle"] = ctx.handle
        if ctx.is_handle_first or self._session_flag(HANDLE_FIRST_KEY):
            payload["handle_first"] = payload["auth"]["handle_first"] = True
        if (
            self.state == FlowState.DEVICE_REGISTRATION
            or self._session_flag(DEVICE_REGISTRATION_KEY)
            or self._session_flag(DEVICE_REGISTRATION_FLOW_KEY)
        ):
            payload["device_registration"] = payload["auth"]["device_registration"] = True
        return payload

    def _reject_code(self, message: str) -> None:
        self._apply(ErrorRaised(message))
        self.verification_code = ""
        self.auto_submit = True

    async def submit_verification_code(self, code: Optional[str] = None) -> FlowState:
        """Send the SMS code and finish the login or registration."""
        code = digits_only(code if code is not None else self.verification_code)
        if len(code) != CODE_LENGTH or self.is_loading:
            return self.state
        self.verification_code = code
        self.auto_submit = False
        payload = self._verification_payload(code)
        outcome = "registration" if self.context.is_registration else "sms"

        with self._loading():
            try:
                data = await self._call("POST", "verify_code", payload)
            except asyncio.TimeoutError:
                self._reject_code(REQUEST_TIMEOUT_MESSAGE)
                return self.state
            except DeviceTrustError as exc:
                self.log.warning("[FLOW] Code verification failed: %s", exc)
                self._reject_code(_server_error(exc, "Invalid verification code"))
                return self.state

            for key in (DEVICE_REGISTRATION_KEY, DEVICE_REGISTRATION_FLOW_KEY, HANDLE_FIRST_KEY):
                self.storage.remove(SESSION, key)

            status = data.get("status")
            if status == "authenticated":
                await self._complete_authentication(data, outcome, register_passkey=True)
            elif status == "needs_handle":
                self.log.info("[FLOW] Phone verified, handle creation required")
                self._apply(CreateHandleRequired())
            else:
                self._reject_code(data.get("error") or "Invalid verification code")
        return self.state

    async def enter_verification_digit(self, digit: str) -> None:
        if not digit.isdigit() or len(self.verification_code) >= CODE_LENGTH:
            return
        self.verification_code += digit
        if self.context.error:
            self._apply(ErrorCleared())
        if len(self.verification_code) == CODE_LENGTH and self.auto_submit:
            await self.submit_verification_code()

    # PIN ----------------------------------------------------------------------

    def open_pin_entry(self) -> None:
        if self.is_loading:
            return
        self.pin = ""
        self._apply(
            PinRequested(
                identifier=self.context.identifier,
                handle=self.context.handle,
                welcome_message=self.context.welcome_message or "Welcome back",
            )
        )

    async def enter_pin_digit(self, digit: str) -> None:
        if not digit.isdigit() or len(self.pin) >= PIN_LENGTH:
            return
        self.pin += digit
        if len(self.pin) == PIN_LENGTH:
            await self.submit_pin()

    def remove_last_pin_digit(self) -> None:
        self.pin = self.pin[:-1]

    async def submit_pin(self) -> FlowState:
        """Verify the PIN; repeated failures fall back to SMS."""
        if len(self.pin) != PIN_LENGTH or self.is_loading:
            return self.state
        identifier = self._user_identifier()
        payload = {"identifier": identifier, "pin": self.pin}

        with self._loading():
            try:
                data = await self._call("POST", "verify_pin", payload)
                if data.get("status") != "authenticated":
                    raise ApiError(200, data, "verify_pin")
            except asyncio.TimeoutError:
                self._apply(ErrorRaised(REQUEST_TIMEOUT_MESSAGE))
                return self.state
            except DeviceTrustError as exc:
                self.log.warning("[FLOW] PIN verification failed for %s: %s", identifier, exc)
                self.storage.remove(LOCAL, AUTHENTICATED_USER_KEY)
                self.storage.remove(SESSION, DEVICE_SESSION_KEY)
                self.pin = ""
                self._apply(
                    PinRejected(
                        max_attempts=self.cfg.max_pin_attempts,
                        error=_server_error(exc, "Invalid PIN"),
                    )
                )
            else:
                self.storage.remove(SESSION, DEVICE_REGISTRATION_KEY)
                await self._complete_authentication(data, "pin")
                return self.state

        if self.state == FlowState.VERIFICATION:
            self.log.warning("[FLOW] PIN locked out for %s, falling back to SMS", identifier)
            metrics.pin_lockouts_total.inc()
            await self.register_device()
        return self.state

    async def check_pin_availability(self, identifier: str) -> bool:
        try:
            data = await self._call(
                "GET",
                "check_pin_availability",
                {"identifier": identifier},
                timeout=self.cfg.device_check_timeout,
            )
        except (asyncio.TimeoutError, DeviceTrustError) as exc:
            self.log.warning("[FLOW] PIN availability check failed: %s", exc)
            return False
        return bool(data.get("pin_available"))

    # Navigation ---------------------------------------------------------------

    def go_back_to_login_options(self) -> None:
        if self.is_loading:
            return
        self.storage.remove(SESSION, ACCOUNT_ALREADY_EXISTS_KEY)
        self.pin = ""
        self.verification_code = ""
        self.auto_submit = True
        self._apply(ShowLoginOptions())

    def on_peer_login(self) -> bool:
        """React to another tab signing in.

        Returns:
            True if this tab was redirected to the dashboard
        """
        dashboard = self.cfg.dashboard_path
        if self.navigator.path == dashboard:
            return False
        if self.state in (FlowState.VERIFICATION, FlowState.PIN_ENTRY) or self.is_loading:
            self.log.debug("[FLOW] Peer login ignored while %s", self.state.value)
            return False
        self.log.info("[FLOW] Authenticated in another tab, redirecting")
        self.navigator.go(dashboard)
        return True

    def on_peer_logout(self) -> None:
        self.log.info("[FLOW] Logged out in another tab")
        self.storage.remove(SESSION, DEVICE_SESSION_KEY)
        self.storage.remove(SESSION, CURRENT_HANDLE_KEY)
        self._apply(ShowLoginOptions(device_not_registered=True))
        self.identity.clear_device_session()

    def logout(self) -> None:
        self.identity.clear_device_session()
        self.pin = ""
        self.verification_code = ""
        self._apply(ShowLoginOptions())

    # Passkeys -----------------------------------------------------------------

    async def passkey_login(self, identifier: Optional[str] = None) -> FlowState:
        """Sign in with a platform passkey instead of a code."""
        if self.is_loading:
            return self.state
        if not (self.cfg.webauthn_enabled and self.webauthn.is_supported()):
            self._apply(ErrorRaised("Passkey login is not available on this device"))
            return self.state

        with self._loading():
            try:
                data = await asyncio.wait_for(
                    self.webauthn.authenticate(identifier or self._user_identifier() or None),
                    timeout=self.cfg.safety_timeout,
                )
            except asyncio.TimeoutError:
                self._apply(ErrorRaised(REQUEST_TIMEOUT_MESSAGE))
                return self.state
            except Exception as exc:
                self.log.error("[AUTH] Passkey login failed: %s", exc)
                self._apply(ErrorRaised("Passkey login failed. Please try again."))
                return self.state

            if not data or data.get("status") != "authenticated":
                self._apply(ErrorRaised("Passkey login failed. Please try again."))
                return self.state
            await self._complete_authentication(data, "passkey")
        return self.state
