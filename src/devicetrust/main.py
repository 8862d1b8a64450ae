"""Terminal host that runs the login flow against a live backend.

Usage:
    python -m devicetrust.main --config config/devicetrust.yml --handle @alice
    python -m devicetrust.main --phone 7700900000 --register
"""

import argparse
import asyncio
import logging
from typing import Optional

from prometheus_client import generate_latest

from .config import AppCfg, load_config
from .controller import AuthFlowController
from .cross_tab import CrossTabSync
from .device_identity import DeviceIdentity
from .fingerprint import DeviceEnvironment
from .flow import TERMINAL_STATES, FlowState
from .http_client import TrustedHttpClient
from .logging_setup import setup_logging
from .navigation import Navigator
from .reset import ResetHandler
from .storage import RedisStorage, create_storage

log = logging.getLogger("devicetrust")

# Bound on prompts so a misbehaving backend cannot keep the loop alive forever
MAX_PROMPTS = 10


class LoginSession:
    """Wires the flow components for one terminal tab."""

    def __init__(self, cfg: AppCfg, start_url: str = "/"):
        self.cfg = cfg
        self.storage = create_storage(cfg.storage)
        self.navigator = Navigator(start_url)
        self.identity = DeviceIdentity(
            self.storage, cfg.device, environment=DeviceEnvironment.from_host()
        )
        self.http = TrustedHttpClient(
            self.identity, self.storage, cfg.http, navigator=self.navigator
        )
        self.controller = AuthFlowController(
            self.identity, self.http, self.storage, cfg.flow, navigator=self.navigator
        )
        self.resets = ResetHandler(self.storage, self.identity, cfg.reset, self.navigator)
        self.http.auth_errors.add_listener(self.resets.on_auth_error)
        self.sync = CrossTabSync(self.storage)

    def close(self) -> None:
        self.sync.close()
        self.http.close()


async def _prompt(text: str) -> str:
    answer = await asyncio.to_thread(input, text)
    return answer.strip()


async def _drive(controller: AuthFlowController) -> None:
    """Prompt for whatever the current screen needs until a terminal state."""
    for _ in range(MAX_PROMPTS):
        state = controller.state
        if controller.context.error:
            print(f"! {controller.context.error}")
        if state in TERMINAL_STATES:
            return

        if state == FlowState.PIN_ENTRY:
            print(controller.context.welcome_message or "Welcome back")
            for digit in await _prompt("PIN: "):
                await controller.enter_pin_digit(digit)
        elif state == FlowState.VERIFICATION:
            print(controller.context.welcome_message or "Enter the code we sent you")
            await controller.submit_verification_code(await _prompt("SMS code: "))
        elif state == FlowState.PHONE_ENTRY:
            await controller.submit_phone(await _prompt("Phone number: "))
        elif state in (FlowState.HANDLE_ENTRY, FlowState.CREATE_HANDLE):
            await controller.submit_handle(await _prompt("Choose a handle: "))
        elif state == FlowState.REGISTRATION_TRANSITION:
            answer = await _prompt(f"{controller.context.identifier} not found. Register? [y/N] ")
            if answer.lower() != "y":
                return
            controller.continue_registration()
        elif state == FlowState.HANDLE_SUGGESTIONS:
            print("Available handles: " + ", ".join(controller.context.suggestions))
            await controller.choose_suggested_handle(await _prompt("Handle: "))
        elif state == FlowState.LOGIN_OPTIONS and controller.context.show_existing_account_alert:
            ctx = controller.context
            print(f"Account found: {ctx.masked_handle or ctx.masked_phone}")
            if ctx.pin_available:
                controller.open_pin_entry()
            else:
                await controller.register_device()
        else:
            return


async def main_async(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Sign in with device trust")
    parser.add_argument(
        "--config",
        default="config/devicetrust.yml",
        help="Path to configuration file (default: config/devicetrust.yml)",
    )
    identifier = parser.add_mutually_exclusive_group()
    identifier.add_argument("--handle", help="Sign in with a handle (e.g. @alice)")
    identifier.add_argument("--phone", help="Sign in with a national phone number")
    parser.add_argument(
        "--country-code",
        choices=["+44", "+65"],
        help="Country code for --phone (default from config)",
    )
    parser.add_argument(
        "--register",
        action="store_true",
        help="Register the identifier instead of signing in",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Print Prometheus metrics on exit",
    )
    args = parser.parse_args(argv)

    setup_logging()
    cfg = load_config(args.config)
    session = LoginSession(cfg)
    controller = session.controller
    if args.country_code:
        controller.country_code = args.country_code

    monitor_task = None
    if isinstance(session.storage, RedisStorage):
        monitor_task = asyncio.create_task(session.storage.monitor())
    watch_task = asyncio.create_task(session.sync.watch(controller, session.resets))

    try:
        session.resets.startup()
        await controller.check_device()
        if controller.state == FlowState.CHECKING and session.identity.is_authenticated():
            print(f"Already signed in; dashboard at {cfg.flow.dashboard_path}")
            return 0

        value = args.handle or args.phone
        if value and controller.state in (FlowState.CHECKING, FlowState.LOGIN_OPTIONS):
            if controller.state == FlowState.CHECKING:
                log.warning("Device check did not finish, showing login options")
                controller.go_back_to_login_options()
            method = "phone" if args.phone else "handle"
            controller.select_login_method(method, registration=args.register)
            await controller.submit_identifier(value, registration=args.register)

        await _drive(controller)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1
    finally:
        tasks = [t for t in (watch_task, monitor_task) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        session.close()
        if args.metrics:
            print(generate_latest().decode("utf-8"))

    state = controller.state
    print(f"Final state: {state.value}")
    if controller.context.redirect_to:
        print(f"Redirect: {controller.context.redirect_to}")
    return 0 if state in TERMINAL_STATES else 1


def main() -> None:
    raise SystemExit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
