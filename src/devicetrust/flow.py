"""Login flow state machine.

The flow is one ``FlowState`` plus a small immutable ``FlowContext``. Every
change goes through ``transition(snapshot, event)``, a pure function that
rejects events the current state does not accept.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Type

from .errors import InvalidTransitionError

PIN_LOCKOUT_MESSAGE = "Too many failed attempts. Please verify with SMS."


class FlowState(str, Enum):
    """Screens of the login flow."""

    CHECKING = "checking"  # Initial device check in flight
    DEVICE_REGISTERED = "deviceRegistered"
    DEVICE_NOT_REGISTERED = "deviceNotRegistered"
    LOGIN_OPTIONS = "loginOptions"  # Identifier entry for login
    HANDLE_ENTRY = "handleEntry"  # Handle collection during registration
    HANDLE_STATUS = "handleStatus"  # Availability check during registration
    PHONE_ENTRY = "phoneEntry"  # Phone collection during registration
    DEVICE_REGISTRATION = "deviceRegistration"  # Confirm binding this device
    VERIFICATION = "verification"  # SMS code entry
    CREATE_HANDLE = "createHandle"  # Phone-first user still needs a handle
    LOGIN_SUCCESS = "loginSuccess"  # Device check authenticated silently
    HANDLE_SUGGESTIONS = "handleSuggestions"
    PIN_ENTRY = "pinEntry"
    REGISTRATION_TRANSITION = "registrationTransition"  # Offer to register unknown identifier
    VERIFICATION_SUCCESS = "verificationSuccess"
    REGISTRATION = "registration"  # Identifier entry for registration


TERMINAL_STATES = frozenset({FlowState.LOGIN_SUCCESS, FlowState.VERIFICATION_SUCCESS})


@dataclass(frozen=True)
class FlowContext:
    identifier: str = ""
    login_method: str = "handle"  # handle|phone
    handle: str = ""
    phone: str = ""
    is_handle_first: bool = False
    is_registration: bool = False
    is_quick_verification: bool = False
    masked_phone: str = ""
    masked_handle: str = ""
    account_type: Optional[str] = None  # handle|phone, for the existing-account alert
    pin_available: bool = False
    pin_attempts: int = 0
    suggestions: Tuple[str, ...] = ()
    phone_collected: bool = False
    show_existing_account_alert: bool = False
    device_not_registered: bool = False
    welcome_message: str = ""
    error: str = ""
    redirect_to: str = ""


@dataclass(frozen=True)
class Snapshot:
    state: FlowState = FlowState.CHECKING
    context: FlowContext = field(default_factory=FlowContext)


# Events ------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceCheckCompleted:
    outcome: str  # authenticated|quick_verification|show_options|logged_out|unknown|error
    handle: str = ""
    masked_phone: str = ""
    pin_available: bool = False
    device_not_registered: bool = False
    redirect_to: str = ""
    error: str = ""


@dataclass(frozen=True)
class ShowLoginOptions:
    error: str = ""
    device_not_registered: Optional[bool] = None  # None keeps the current flag
    keep_identifier: bool = False


@dataclass(frozen=True)
class SelectLoginMethod:
    method: str


@dataclass(frozen=True)
class StartRegistration:
    method: str = ""  # Empty keeps the current login method
    error: str = ""


@dataclass(frozen=True)
class CheckingAvailability:
    identifier: str


@dataclass(frozen=True)
class ExistingAccountDetected:
    identifier: str
    account_type: str
    masked_handle: str = ""
    masked_phone: str = ""
    pin_available: bool = False
    error: str = ""


@dataclass(frozen=True)
class DeviceRegistrationRequested:
    pass


@dataclass(frozen=True)
class PinRequested:
    identifier: str = ""
    handle: str = ""
    welcome_message: str = "Welcome back"


@dataclass(frozen=True)
class PinRejected:
    max_attempts: int = 3
    error: str = "Invalid PIN"


@dataclass(frozen=True)
class VerificationStarted:
    welcome_message: str = ""
    identifier: str = ""
    phone: str = ""
    handle: str = ""
    masked_phone: str = ""
    is_quick: bool = False
    error: Optional[str] = ""  # None keeps the current error


@dataclass(frozen=True)
class AuthSucceeded:
    redirect_to: str
    handle: str = ""


@dataclass(frozen=True)
class PhoneRequired:
    """Handle-first registration: the phone number comes next."""

    handle: str = ""


@dataclass(frozen=True)
class HandleRequired:
    """Phone-first registration: the handle comes next."""

    phone: str = ""


@dataclass(frozen=True)
class CreateHandleRequired:
    pass


@dataclass(frozen=True)
class RegistrationOffered:
    identifier: str
    login_method: str


@dataclass(frozen=True)
class SuggestionsOffered:
    """A chosen handle is taken; offer free ones instead."""

    suggestions: Tuple[str, ...]
    handle: str = ""
    error: str = ""
    phone_collected: bool = False  # Only the handle is still missing


@dataclass(frozen=True)
class ErrorRaised:
    message: str


@dataclass(frozen=True)
class ErrorCleared:
    pass


S = FlowState
ANY_STATE: FrozenSet[FlowState] = frozenset(FlowState)

# States each event may fire from
ALLOWED_TRANSITIONS: Dict[Type, FrozenSet[FlowState]] = {
    DeviceCheckCompleted: frozenset({S.CHECKING, S.LOGIN_OPTIONS}),
    ShowLoginOptions: ANY_STATE,
    SelectLoginMethod: frozenset({S.LOGIN_OPTIONS, S.REGISTRATION}),
    StartRegistration: frozenset(
        {S.LOGIN_OPTIONS, S.REGISTRATION, S.REGISTRATION_TRANSITION, S.HANDLE_STATUS}
    ),
    CheckingAvailability: frozenset({S.REGISTRATION}),
    ExistingAccountDetected: frozenset(
        {S.LOGIN_OPTIONS, S.REGISTRATION, S.HANDLE_STATUS, S.PHONE_ENTRY, S.HANDLE_ENTRY}
    ),
    DeviceRegistrationRequested: frozenset({S.LOGIN_OPTIONS}),
    PinRequested: frozenset({S.LOGIN_OPTIONS, S.VERIFICATION, S.PIN_ENTRY}),
    PinRejected: frozenset({S.PIN_ENTRY}),
    VerificationStarted: frozenset(
        {
            S.CHECKING,
            S.LOGIN_OPTIONS,
            S.DEVICE_REGISTRATION,
            S.PIN_ENTRY,
            S.PHONE_ENTRY,
            S.HANDLE_ENTRY,
            S.CREATE_HANDLE,
            S.HANDLE_SUGGESTIONS,
            S.VERIFICATION,
        }
    ),
    AuthSucceeded: frozenset(
        {
            S.LOGIN_OPTIONS,
            S.PIN_ENTRY,
            S.VERIFICATION,
            S.HANDLE_ENTRY,
            S.PHONE_ENTRY,
            S.CREATE_HANDLE,
            S.HANDLE_SUGGESTIONS,
        }
    ),
    PhoneRequired: frozenset(
        {
            S.REGISTRATION,
            S.HANDLE_STATUS,
            S.REGISTRATION_TRANSITION,
            S.HANDLE_SUGGESTIONS,
            S.HANDLE_ENTRY,
        }
    ),
    HandleRequired: frozenset(
        {S.REGISTRATION, S.HANDLE_STATUS, S.REGISTRATION_TRANSITION, S.PHONE_ENTRY}
    ),
    CreateHandleRequired: frozenset({S.VERIFICATION}),
    RegistrationOffered: frozenset({S.LOGIN_OPTIONS}),
    SuggestionsOffered: frozenset(
        {
            S.LOGIN_OPTIONS,
            S.REGISTRATION,
            S.HANDLE_STATUS,
            S.HANDLE_ENTRY,
            S.CREATE_HANDLE,
            S.HANDLE_SUGGESTIONS,
        }
    ),
    ErrorRaised: ANY_STATE,
    ErrorCleared: ANY_STATE,
}


def is_allowed(state: FlowState, event) -> bool:
    return state in ALLOWED_TRANSITIONS.get(type(event), frozenset())


def _on_device_check(snapshot: Snapshot, event: DeviceCheckCompleted) -> Snapshot:
    ctx = snapshot.context
    if event.outcome == "authenticated":
        return Snapshot(
            S.LOGIN_SUCCESS,
            replace(ctx, handle=event.handle or ctx.handle, redirect_to=event.redirect_to, error=""),
        )
    if event.outcome == "quick_verification":
        return Snapshot(
            S.VERIFICATION,
            replace(
                ctx,
                identifier=event.handle,
                handle=event.handle,
                phone=event.masked_phone,
                masked_phone=event.masked_phone,
                is_quick_verification=True,
                welcome_message=f"Welcome back, {event.handle}!",
                pin_available=event.pin_available,
                error="",
            ),
        )
    if event.outcome == "show_options":
        return Snapshot(
            S.LOGIN_OPTIONS,
            replace(ctx, device_not_registered=event.device_not_registered, error=""),
        )
    if event.outcome == "logged_out":
        return Snapshot(S.LOGIN_OPTIONS, replace(ctx, device_not_registered=False, error=""))
    return Snapshot(
        S.LOGIN_OPTIONS, replace(ctx, device_not_registered=True, error=event.error)
    )


def _on_show_login_options(snapshot: Snapshot, event: ShowLoginOptions) -> Snapshot:
    ctx = snapshot.context
    device_not_registered = (
        ctx.device_not_registered
        if event.device_not_registered is None
        else event.device_not_registered
    )
    return Snapshot(
        S.LOGIN_OPTIONS,
        replace(
            ctx,
            identifier=ctx.identifier if event.keep_identifier else "",
            is_registration=False,
            is_quick_verification=False,
            show_existing_account_alert=False,
            pin_attempts=0,
            suggestions=(),
            device_not_registered=device_not_registered,
            welcome_message="",
            error=event.error,
        ),
    )


def _on_pin_rejected(snapshot: Snapshot, event: PinRejected) -> Snapshot:
    ctx = snapshot.context
    attempts = ctx.pin_attempts + 1
    if attempts >= event.max_attempts:
        return Snapshot(
            S.VERIFICATION,
            replace(ctx, pin_attempts=attempts, error=PIN_LOCKOUT_MESSAGE),
        )
    return Snapshot(S.PIN_ENTRY, replace(ctx, pin_attempts=attempts, error=event.error))


def _on_verification(snapshot: Snapshot, event: VerificationStarted) -> Snapshot:
    ctx = snapshot.context
    return Snapshot(
        S.VERIFICATION,
        replace(
            ctx,
            welcome_message=event.welcome_message or ctx.welcome_message,
            identifier=event.identifier or ctx.identifier,
            phone=event.phone or ctx.phone,
            handle=event.handle or ctx.handle,
            masked_phone=event.masked_phone or ctx.masked_phone,
            is_quick_verification=event.is_quick,
            show_existing_account_alert=False,
            error=ctx.error if event.error is None else event.error,
        ),
    )


def transition(snapshot: Snapshot, event) -> Snapshot:
    """Apply ``event`` to ``snapshot`` and return the next snapshot.

    Raises:
        InvalidTransitionError: If the event is not accepted in the current state
    """
    if not is_allowed(snapshot.state, event):
        raise InvalidTransitionError(snapshot.state, event)

    ctx = snapshot.context

    if isinstance(event, DeviceCheckCompleted):
        return _on_device_check(snapshot, event)
    if isinstance(event, ShowLoginOptions):
        return _on_show_login_options(snapshot, event)
    if isinstance(event, SelectLoginMethod):
        return Snapshot(
            snapshot.state,
            replace(
                ctx,
                login_method=event.method,
                identifier="",
                show_existing_account_alert=False,
                error="",
            ),
        )
    if isinstance(event, StartRegistration):
        return Snapshot(
            S.REGISTRATION,
            replace(
                ctx,
                login_method=event.method or ctx.login_method,
                is_registration=True,
                show_existing_account_alert=False,
                error=event.error,
            ),
        )
    if isinstance(event, CheckingAvailability):
        return Snapshot(S.HANDLE_STATUS, replace(ctx, identifier=event.identifier, error=""))
    if isinstance(event, ExistingAccountDetected):
        return Snapshot(
            S.LOGIN_OPTIONS,
            replace(
                ctx,
                identifier=event.identifier,
                account_type=event.account_type,
                masked_handle=event.masked_handle,
                masked_phone=event.masked_phone,
                pin_available=event.pin_available or ctx.pin_available,
                show_existing_account_alert=True,
                is_registration=False,
                error=event.error,
            ),
        )
    if isinstance(event, DeviceRegistrationRequested):
        return Snapshot(S.DEVICE_REGISTRATION, replace(ctx, error=""))
    if isinstance(event, PinRequested):
        return Snapshot(
            S.PIN_ENTRY,
            replace(
                ctx,
                identifier=event.identifier or ctx.identifier,
                handle=event.handle or ctx.handle,
                welcome_message=event.welcome_message,
                pin_available=True,
                pin_attempts=0,
                show_existing_account_alert=False,
                error="",
            ),
        )
    if isinstance(event, PinRejected):
        return _on_pin_rejected(snapshot, event)
    if isinstance(event, VerificationStarted):
        return _on_verification(snapshot, event)
    if isinstance(event, AuthSucceeded):
        return Snapshot(
            S.VERIFICATION_SUCCESS,
            replace(
                ctx,
                handle=event.handle or ctx.handle,
                redirect_to=event.redirect_to,
                show_existing_account_alert=False,
                error="",
            ),
        )
    if isinstance(event, PhoneRequired):
        return Snapshot(
            S.PHONE_ENTRY,
            replace(
                ctx,
                handle=event.handle or ctx.handle,
                is_handle_first=True,
                is_registration=True,
                error="",
            ),
        )
    if isinstance(event, HandleRequired):
        return Snapshot(
            S.HANDLE_ENTRY,
            replace(
                ctx,
                phone=event.phone or ctx.phone,
                is_handle_first=False,
                is_registration=True,
                error="",
            ),
        )
    if isinstance(event, CreateHandleRequired):
        return Snapshot(S.CREATE_HANDLE, replace(ctx, error=""))
    if isinstance(event, RegistrationOffered):
        return Snapshot(
            S.REGISTRATION_TRANSITION,
            replace(ctx, identifier=event.identifier, login_method=event.login_method, error=""),
        )
    if isinstance(event, SuggestionsOffered):
        return Snapshot(
            S.HANDLE_SUGGESTIONS,
            replace(
                ctx,
                suggestions=tuple(event.suggestions),
                handle=event.handle or ctx.handle,
                is_handle_first=ctx.is_handle_first if event.phone_collected else True,
                phone_collected=event.phone_collected,
                show_existing_account_alert=False,
                error=event.error,
            ),
        )
    if isinstance(event, ErrorRaised):
        return Snapshot(snapshot.state, replace(ctx, error=event.message))
    if isinstance(event, ErrorCleared):
        return Snapshot(snapshot.state, replace(ctx, error=""))

    raise InvalidTransitionError(snapshot.state, event)
