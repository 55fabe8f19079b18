"""Tests for the service entry point."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from billing.serve import main


class TestCommandLine:
    def test_defaults(self):
        with patch("uvicorn.run") as run:
            main([])
        run.assert_called_once_with("billing.serve:app", host="0.0.0.0", port=8080)

    def test_port_and_host(self):
        with patch("uvicorn.run") as run:
            main(["--port", "9001", "--host", "127.0.0.1"])
        run.assert_called_once_with("billing.serve:app", host="127.0.0.1", port=9001)

    def test_invalid_port_exits(self):
        with patch("uvicorn.run") as run, pytest.raises(SystemExit):
            main(["--port", "eighty"])
        run.assert_not_called()
