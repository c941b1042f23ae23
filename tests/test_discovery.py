"""Tests for arduino-cli discovery and the polling watcher."""

import asyncio
import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from boardsync.discovery import (
    ArduinoCliBoardsService,
    BoardsService,
    DiscoveryError,
    DiscoveryWatcher,
    package_id_from_fqbn,
    parse_board_list,
    parse_board_listall,
    parse_user_fields,
)
from boardsync.notifications import NotificationCenter
from boardsync.protocol import AttachedBoardsState, Board, Port, UserField

BOARD_LIST = {
    "detected_ports": [
        {
            "matching_boards": [{"name": "Arduino Uno", "fqbn": "arduino:avr:uno"}],
            "port": {"address": "/dev/ttyACM0", "label": "/dev/ttyACM0", "protocol": "serial"},
        },
        {
            "port": {"address": "/dev/ttyS0", "label": "/dev/ttyS0", "protocol": "serial"},
        },
        {
            "matching_boards": [{"name": "Arduino Nano ESP32", "fqbn": "arduino:esp32:nano_nora"}],
            "port": {"address": "192.168.1.7", "label": "nano.local", "protocol": "network"},
        },
    ]
}


def _completed(stdout="", returncode=0, stderr=""):
    mock = MagicMock()
    mock.stdout = stdout
    mock.returncode = returncode
    mock.stderr = stderr
    return mock


class TestPackageIdFromFqbn:
    def test_vendor_and_arch(self):
        assert package_id_from_fqbn("arduino:avr:uno") == "arduino:avr"
        assert package_id_from_fqbn("esp32:esp32:esp32:PartitionScheme=huge_app") == "esp32:esp32"

    def test_invalid(self):
        assert package_id_from_fqbn(None) is None
        assert package_id_from_fqbn("uno") is None


class TestParseBoardList:
    def test_detected_ports(self):
        state = parse_board_list(BOARD_LIST)
        assert [p.address for p in state.ports] == ["/dev/ttyACM0", "/dev/ttyS0", "192.168.1.7"]
        assert state.ports[2] == Port("192.168.1.7", "network")
        assert state.ports[2].label == "nano.local"
        uno, nano = state.boards
        assert uno == Board("Arduino Uno", "arduino:avr:uno", "arduino:avr", Port("/dev/ttyACM0"))
        assert nano.port.protocol == "network"

    def test_legacy_list(self):
        state = parse_board_list([{"port": {"address": "COM3", "protocol": "serial"}, "matching_boards": []}])
        assert state.ports == (Port("COM3"),)
        assert state.boards == ()

    def test_platform_metadata_id(self):
        data = [{
            "port": {"address": "COM3"},
            "matching_boards": [{"name": "Feather", "fqbn": "adafruit:samd:feather", "platform": {"metadata": {"id": "adafruit:samd"}}}],
        }]
        assert parse_board_list(data).boards[0].package_id == "adafruit:samd"

    def test_entries_without_address_are_skipped(self):
        assert parse_board_list({"detected_ports": [{"port": {}}]}) == AttachedBoardsState()

    def test_unexpected_output(self):
        with pytest.raises(DiscoveryError):
            parse_board_list("nonsense")


class TestParseBoardListall:
    def test_boards(self):
        boards = parse_board_listall({"boards": [
            {"name": "Arduino Uno", "fqbn": "arduino:avr:uno"},
            {"name": "Arduino Mega", "fqbn": "arduino:avr:mega"},
        ]})
        assert [b.fqbn for b in boards] == ["arduino:avr:uno", "arduino:avr:mega"]
        assert boards[0].package_id == "arduino:avr"

    def test_empty(self):
        assert parse_board_listall({}) == []


class TestArduinoCliBoardsService:
    @patch("boardsync.discovery.subprocess.run")
    def test_snapshot(self, mock_run):
        mock_run.return_value = _completed(json.dumps(BOARD_LIST))
        state = asyncio.run(ArduinoCliBoardsService().snapshot())
        assert len(state.ports) == 3
        assert mock_run.call_args[0][0] == ["arduino-cli", "board", "list", "--format", "json"]

    @patch("boardsync.discovery.subprocess.run")
    def test_attached_boards_and_ports(self, mock_run):
        mock_run.return_value = _completed(json.dumps(BOARD_LIST))
        service = ArduinoCliBoardsService(cli="/opt/arduino-cli")
        assert len(asyncio.run(service.get_attached_boards())) == 2
        assert len(asyncio.run(service.get_available_ports())) == 3
        assert mock_run.call_args[0][0][0] == "/opt/arduino-cli"

    @patch("boardsync.discovery.subprocess.run")
    def test_nonzero_exit(self, mock_run):
        mock_run.return_value = _completed(returncode=1, stderr="daemon not running")
        with pytest.raises(DiscoveryError, match="daemon not running"):
            asyncio.run(ArduinoCliBoardsService().snapshot())

    @patch("boardsync.discovery.subprocess.run", side_effect=subprocess.TimeoutExpired("arduino-cli", 10))
    def test_timeout(self, mock_run):
        with pytest.raises(DiscoveryError, match="timed out"):
            asyncio.run(ArduinoCliBoardsService().snapshot())

    @patch("boardsync.discovery.subprocess.run")
    def test_invalid_json(self, mock_run):
        mock_run.return_value = _completed("{oops")
        with pytest.raises(DiscoveryError, match="Invalid JSON"):
            asyncio.run(ArduinoCliBoardsService().snapshot())

    @patch("boardsync.discovery.comports")
    @patch("boardsync.discovery.subprocess.run", side_effect=FileNotFoundError)
    def test_falls_back_to_pyserial(self, mock_run, mock_comports):
        port = MagicMock()
        port.device = "/dev/ttyUSB0"
        port.description = "CP2102 USB to UART"
        mock_comports.return_value = [port]
        state = asyncio.run(ArduinoCliBoardsService().snapshot())
        assert state.boards == ()
        assert state.ports == (Port("/dev/ttyUSB0", "serial"),)
        assert state.ports[0].label == "CP2102 USB to UART"

    @patch("boardsync.discovery.subprocess.run")
    def test_search_boards(self, mock_run):
        mock_run.return_value = _completed(json.dumps({"boards": [{"name": "Arduino Uno", "fqbn": "arduino:avr:uno"}]}))
        boards = asyncio.run(ArduinoCliBoardsService().search_boards("uno"))
        assert boards == [Board("Arduino Uno", "arduino:avr:uno", "arduino:avr")]
        assert mock_run.call_args[0][0] == ["arduino-cli", "board", "listall", "uno", "--format", "json"]

    @patch("boardsync.discovery.subprocess.run", side_effect=FileNotFoundError)
    def test_search_without_cli(self, mock_run):
        with pytest.raises(DiscoveryError, match="not found"):
            asyncio.run(ArduinoCliBoardsService().search_boards())


OTA_PROPERTIES = [
    "upload.tool=avrdude",
    "upload.tool.network=arduino_ota",
    "tools.arduino_ota.upload.field.password=Password",
    "tools.arduino_ota.upload.field.password.secret=true",
    "tools.arduino_ota.upload.field.user=User name",
    "tools.avrdude.upload.field.programmer=Programmer",
    "build.board=AVR_UNO",
]


class TestParseUserFields:
    def test_fields_of_protocol_tool(self):
        fields = parse_user_fields(OTA_PROPERTIES, "network")
        assert fields == [
            UserField("arduino_ota", "password", "Password", secret=True),
            UserField("arduino_ota", "user", "User name"),
        ]

    def test_falls_back_to_default_tool(self):
        assert parse_user_fields(OTA_PROPERTIES, "serial") == [
            UserField("avrdude", "programmer", "Programmer"),
        ]

    def test_no_upload_tool(self):
        assert parse_user_fields(["build.board=AVR_UNO"], "serial") == []
        assert parse_user_fields(None, "serial") == []


class TestGetBoardUserFields:
    @patch("boardsync.discovery.subprocess.run")
    def test_board_details(self, mock_run):
        mock_run.return_value = _completed(json.dumps({"fqbn": "arduino:avr:uno", "build_properties": OTA_PROPERTIES}))
        fields = asyncio.run(ArduinoCliBoardsService().get_board_user_fields("arduino:avr:uno", "network"))
        assert [f.name for f in fields] == ["password", "user"]
        assert mock_run.call_args[0][0] == [
            "arduino-cli", "board", "details", "-b", "arduino:avr:uno",
            "--show-properties=expanded", "--format", "json",
        ]

    @patch("boardsync.discovery.subprocess.run", side_effect=FileNotFoundError)
    def test_without_cli(self, mock_run):
        with pytest.raises(DiscoveryError, match="not found"):
            asyncio.run(ArduinoCliBoardsService().get_board_user_fields("arduino:avr:uno", "network"))

    def test_default_service_has_none(self):
        assert asyncio.run(_SequenceService([AttachedBoardsState()]).get_board_user_fields("a:b:c", "serial")) == []


class _SequenceService(BoardsService):
    def __init__(self, states):
        self.states = list(states)

    async def get_attached_boards(self):
        return []

    async def get_available_ports(self):
        return []

    async def snapshot(self):
        return self.states.pop(0) if len(self.states) > 1 else self.states[0]


class TestDiscoveryWatcher:
    def test_fires_only_on_change(self):
        com3 = Port("COM3")
        first = AttachedBoardsState(ports=(com3,))
        second = AttachedBoardsState(boards=(Board("Arduino Uno", "arduino:avr:uno", port=com3),), ports=(com3,))
        center = NotificationCenter()
        events = []
        center.on_attached_boards_did_change.subscribe(events.append)
        watcher = DiscoveryWatcher(_SequenceService([first, first, second]), center)

        async def scenario():
            assert await watcher.poll_once() is not None
            assert await watcher.poll_once() is None
            assert await watcher.poll_once() is not None

        asyncio.run(scenario())
        assert len(events) == 2
        assert events[1].diff().attached_boards[0].name == "Arduino Uno"
        assert watcher.state == second

    def test_run_until_stopped(self):
        center = NotificationCenter()
        watcher = DiscoveryWatcher(_SequenceService([AttachedBoardsState(ports=(Port("COM3"),))]), center, interval=0.01)

        async def scenario():
            runner = asyncio.ensure_future(watcher.run())
            await asyncio.sleep(0.05)
            watcher.stop()
            await asyncio.wait_for(runner, 1)

        asyncio.run(scenario())
        assert watcher.state.ports == (Port("COM3"),)
