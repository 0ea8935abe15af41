import shlex
import sys
from pathlib import Path

import pytest

from applabels.client import LabelClient
from applabels.exceptions import ClientError, InvalidResponseError, LabelTimeoutError

FILES_ENTRY = '[Desktop Entry]\nType=Application\nName=Files\n'
FIREFOX_ENTRY = '[Desktop Entry]\nType=Application\nName=Firefox Web Browser\n'


def fake_server(*lines: str) -> list[str]:
    """ command answering its first request with the given lines, then idling until its stdin is closed """
    script = f'import sys\nsys.stdin.readline()\nfor line in {list(lines)!r}:\n    print(line, flush=True)\nsys.stdin.read()\n'
    return [sys.executable, '-c', script]


def silent_once_server(marker: Path, *lines: str) -> list[str]:
    """ command that stays silent on its first run and behaves like fake_server on every later run """
    script = (f'import os, sys\n'
              f'if not os.path.exists({str(marker)!r}):\n'
              f'    open({str(marker)!r}, "w").close()\n'
              f'    sys.stdin.read()\n'
              f'    sys.exit()\n'
              f'sys.stdin.readline()\n'
              f'for line in {list(lines)!r}:\n'
              f'    print(line, flush=True)\n'
              f'sys.stdin.read()\n')
    return [sys.executable, '-c', script]


def pinging_server(pings: int, interval: float, *lines: str) -> list[str]:
    """ command that pings for a while before answering its first request with the given lines """
    script = (f'import sys, time\n'
              f'sys.stdin.readline()\n'
              f'for i in range({pings}):\n'
              f'    print(f"ping:{{i}}", flush=True)\n'
              f'    time.sleep({interval})\n'
              f'for line in {list(lines)!r}:\n'
              f'    print(line, flush=True)\n'
              f'sys.stdin.read()\n')
    return [sys.executable, '-c', script]


@pytest.fixture(scope='function')
def applications(xdg_dirs, write_entry):
    user_dir, system_dir = xdg_dirs
    write_entry(system_dir, 'org.gnome.Nautilus.desktop', FILES_ENTRY)
    write_entry(system_dir, 'org.mozilla.firefox.desktop', FIREFOX_ENTRY)


def test_get(applications):
    with LabelClient() as client:
        assert client.get('org.gnome.Nautilus') == 'Files'
        assert client.labels == {'org.gnome.Nautilus': 'Files'}
        # answered from the cache
        assert client.get('org.gnome.Nautilus') == 'Files'


def test_get_unknown_falls_back_to_identifier(applications):
    with LabelClient() as client:
        assert client.get('com.example.missing') == 'com.example.missing'


def test_cache_all(applications):
    with LabelClient() as client:
        assert client.cache_all() == {
            'org.gnome.Nautilus': 'Files',
            'org.mozilla.firefox': 'Firefox Web Browser',
        }
        assert client.get('org.mozilla.firefox') == 'Firefox Web Browser'


def test_close_ends_server(applications):
    client = LabelClient()
    client.connect()
    process = client.process
    client.close()

    assert process.returncode == 0
    assert client.process is None


def test_pings_are_tracked():
    with LabelClient(fake_server('ping:0', 'ping:1', 'package:com.example.app:Example')) as client:
        assert client.get('com.example.app') == 'Example'
        assert client.last_ping == 1
        assert client.last_ping_time is not None


def test_listing_from_fake_server():
    with LabelClient(fake_server('listing', 'a:A', 'b:label:with:colons', '')) as client:
        assert client.cache_all() == {'a': 'A', 'b': 'label:with:colons'}


@pytest.mark.parametrize('line', ['garbage', 'error:unknown-command:find:x', 'ping:abc', 'package:broken'])
def test_invalid_response(line):
    with LabelClient(fake_server(line)) as client:
        with pytest.raises(InvalidResponseError):
            client.get('com.example.app')


def test_timeout():
    with LabelClient(fake_server()) as client:
        with pytest.raises(LabelTimeoutError):
            client.get('com.example.app', timeout=0.2)


def test_server_bootstrap_failure(tmp_path, monkeypatch):
    monkeypatch.setenv('XDG_DATA_HOME', str(tmp_path / 'home'))
    monkeypatch.setenv('XDG_DATA_DIRS', str(tmp_path / 'usr'))
    with LabelClient() as client:
        with pytest.raises(ClientError):
            client.get('com.example.app')


def test_send_without_connection():
    with pytest.raises(ClientError):
        LabelClient().get('com.example.app')


def test_undecodable_response():
    script = 'import sys\nsys.stdin.readline()\nsys.stdout.buffer.write(b"\\xff\\xfe\\n")\nsys.stdout.flush()\nsys.stdin.read()\n'
    with LabelClient([sys.executable, '-c', script]) as client:
        with pytest.raises(InvalidResponseError):
            client.get('com.example.app')


def test_silent_server_is_restarted(tmp_path):
    command = silent_once_server(tmp_path / 'started', 'package:com.example.app:Example')
    with LabelClient(command, stale_timeout=1) as client:
        assert client.get('com.example.app', timeout=10) == 'Example'
        assert client.restarts == 1


def test_listing_is_requested_again_after_restart(tmp_path):
    command = silent_once_server(tmp_path / 'started', 'listing', 'a:A', '')
    with LabelClient(command, stale_timeout=1) as client:
        assert client.cache_all(timeout=10) == {'a': 'A'}
        assert client.restarts == 1


def test_pings_keep_session_alive():
    with LabelClient(pinging_server(15, 0.1, 'package:com.example.app:Example'), stale_timeout=1) as client:
        assert client.get('com.example.app', timeout=10) == 'Example'
        assert client.restarts == 0
        assert client.last_ping == 14


def test_merged_stderr_keeps_protocol_clean(applications, xdg_dirs, write_entry):
    user_dir, system_dir = xdg_dirs
    write_entry(system_dir, 'broken.desktop', '[Desktop Entry]\nthis line has no delimiter\n')

    command = ['sh', '-c', f'exec {shlex.quote(sys.executable)} -m applabels --serve 2>&1']
    with LabelClient(command) as client:
        assert client.cache_all() == {
            'org.gnome.Nautilus': 'Files',
            'org.mozilla.firefox': 'Firefox Web Browser',
        }
        assert client.get('broken') == 'broken'
