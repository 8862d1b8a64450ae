"""Terminal host wiring against a scripted backend."""

import asyncio
from unittest.mock import patch

import pytest

from devicetrust.main import main_async


@pytest.fixture
def cli_config(temp_dir):
    path = temp_dir / "devicetrust.yml"
    path.write_text(
        """
http:
  base_url: "https://app.test/api/v1"

flow:
  redirect_delay: 0

storage:
  backend: "memory"
"""
    )
    return str(path)


@pytest.mark.integration
class TestMainAsync:
    """main_async drives a session from argv to exit code."""

    @pytest.mark.asyncio
    async def test_fast_path_login(self, cli_config, backend, authenticated_response, capsys):
        backend.routes["check_device"] = {"status": "show_options"}
        backend.routes["check_handle"] = {
            "exists": True,
            "is_your_device": True,
            "device_confidence": "high",
        }
        backend.routes["fast_authenticate"] = authenticated_response

        with patch("devicetrust.http_client.requests.Session", return_value=backend.session):
            exit_code = await main_async(["--config", cli_config, "--handle", "@alice", "--metrics"])

        out = capsys.readouterr().out
        assert exit_code == 0
        assert "Final state: verificationSuccess" in out
        assert "Redirect: /dashboard" in out
        assert "devicetrust_auth_outcomes_total" in out
        backend.session.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_trusted_device_needs_no_prompt(
        self, cli_config, backend, authenticated_response, capsys
    ):
        backend.routes["check_device"] = authenticated_response

        with patch("devicetrust.http_client.requests.Session", return_value=backend.session):
            exit_code = await main_async(["--config", cli_config])

        assert exit_code == 0
        assert "Final state: loginSuccess" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_unknown_handle_declined(self, cli_config, backend, capsys):
        backend.routes["check_device"] = {"status": "show_options"}
        backend.routes["check_handle"] = {"exists": False}

        with patch("devicetrust.http_client.requests.Session", return_value=backend.session), patch(
            "builtins.input", return_value="n"
        ):
            exit_code = await main_async(["--config", cli_config, "--handle", "@newbie"])

        assert exit_code == 1
        assert "Final state: registrationTransition" in capsys.readouterr().out

    def test_phone_and_handle_are_exclusive(self, cli_config):
        with pytest.raises(SystemExit):
            asyncio.run(main_async(["--config", cli_config, "--handle", "@a", "--phone", "1"]))
