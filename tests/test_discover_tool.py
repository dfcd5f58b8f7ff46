import json

import pytest

from hue_session.discover_tool import _print_bridges, main
from hue_session.models import BridgeCandidate


def test_print_bridges_plain_listing(capsys):
    _print_bridges(
        [BridgeCandidate(id="001788fffe123456", address="192.168.1.29", name="Living Room Bridge")],
        json_out=False,
    )
    out = capsys.readouterr().out
    assert "1) 192.168.1.29 - Living Room Bridge (id 001788fffe123456)" in out


def test_print_bridges_empty(capsys):
    _print_bridges([], json_out=False)
    assert "No Hue bridges discovered." in capsys.readouterr().out


def test_manual_flag_prints_json_candidate(capsys):
    main(["--manual", "192.168.1.29", "--json"])
    payload = json.loads(capsys.readouterr().out)
    assert payload == [{"id": "manual_192_168_1_29", "address": "192.168.1.29", "port": 443, "name": None}]


def test_manual_flag_rejects_hostnames(capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--manual", "hue.local"])
    assert exc.value.code == 2
    assert "not an IPv4 address" in capsys.readouterr().err
