"""Tests for the command-line entry point."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from lightningrod import __version__
from lightningrod.__main__ import main


@pytest.fixture
def conf_file(tmp_path):
    path = tmp_path / "iotronic.conf"
    path.write_text(f"[lightningrod]\nhome = {tmp_path}\nrest_enabled = false\n")
    return path


class TestMain:
    def test_version(self, capsys):
        main(["--version"])
        assert capsys.readouterr().out.strip() == f"Lightning-rod version {__version__}"

    def test_invalid_config_exits(self, tmp_path):
        path = tmp_path / "iotronic.conf"
        path.write_text("[autobahn]\nalive_timer = soon\n")

        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(path)])
        assert exc_info.value.code == 1

    def test_missing_settings_exits(self, conf_file):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(conf_file)])
        assert exc_info.value.code == 1

    def test_unwritable_settings_exits(self, conf_file, caplog):
        with patch("lightningrod.__main__.LightningRod",
                   side_effect=PermissionError(13, "Permission denied", "settings.json")):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", str(conf_file)])

        assert exc_info.value.code == 1
        assert "Permission denied" in caplog.text
