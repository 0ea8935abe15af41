import time
from pathlib import Path
from typing import Optional

import pytest

from applabels.application import ApplicationRecord
from applabels.exceptions import RegistryError
from applabels.services.registry import ApplicationRegistry

RECORDS = [
    ApplicationRecord('com.example.app', 'Example'),
    ApplicationRecord('org.gnome.Nautilus', 'Files'),
    ApplicationRecord('org.mozilla.firefox', 'Firefox Web Browser'),
]


def pytest_configure(config):
    config.addinivalue_line('markers', 'cli: tests driving the command line interface')


class StubRegistry(ApplicationRegistry):
    def __init__(self, records: list[ApplicationRecord], delay: float = 0):
        super().__init__()
        self.records = records
        self.delay = delay

    def list_applications(self) -> list[ApplicationRecord]:
        time.sleep(self.delay)
        return list(self.records)

    def find_application(self, identifier: str) -> Optional[ApplicationRecord]:
        time.sleep(self.delay)
        for record in self.records:
            if record.identifier == identifier:
                return record
        return None


class FailingRegistry(ApplicationRegistry):
    def list_applications(self) -> list[ApplicationRecord]:
        raise RegistryError('registry is gone')

    def find_application(self, identifier: str) -> Optional[ApplicationRecord]:
        raise RegistryError('registry is gone')


@pytest.fixture(scope='function')
def records() -> list[ApplicationRecord]:
    return list(RECORDS)


@pytest.fixture(scope='function')
def registry(records) -> ApplicationRegistry:
    """
    In-memory registry answering immediately
    """
    return StubRegistry(records)


@pytest.fixture(scope='function')
def slow_registry(records) -> ApplicationRegistry:
    """
    In-memory registry that takes a while on every call, so pings get a chance to race with responses
    """
    return StubRegistry(records, delay=0.02)


@pytest.fixture(scope='function')
def failing_registry() -> ApplicationRegistry:
    return FailingRegistry()


@pytest.fixture(scope='function')
def xdg_dirs(tmp_path: Path, monkeypatch) -> tuple[Path, Path]:
    """
    Point the XDG data directories at an empty user and system application directory

    :return: (user applications dir, system applications dir)
    """
    data_home = tmp_path / 'home' / '.local' / 'share'
    data_dir = tmp_path / 'usr' / 'share'
    (data_home / 'applications').mkdir(parents=True)
    (data_dir / 'applications').mkdir(parents=True)
    monkeypatch.setenv('XDG_DATA_HOME', str(data_home))
    monkeypatch.setenv('XDG_DATA_DIRS', str(data_dir))
    monkeypatch.delenv('LC_ALL', raising=False)
    monkeypatch.delenv('LC_MESSAGES', raising=False)
    monkeypatch.setenv('LANG', 'C')
    return data_home / 'applications', data_dir / 'applications'


@pytest.fixture(scope='function')
def write_entry():
    """
    Helper writing a desktop entry file below a given applications directory
    """

    def write(directory: Path, name: str, body: str) -> Path:
        path = directory / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body, encoding='utf-8')
        return path

    return write
