import configparser
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from applabels.application import ApplicationRecord
from applabels.exceptions import BootstrapError, RegistryError
from applabels.services.registry import ApplicationRegistry

DESKTOP_ENTRY_GROUP = 'Desktop Entry'
DESKTOP_FILE_SUFFIX = '.desktop'
APPLICATION_TYPE = 'Application'
APPLICATIONS_SUBDIR = 'applications'

DEFAULT_DATA_HOME = '~/.local/share'
DEFAULT_DATA_DIRS = '/usr/local/share:/usr/share'
LOCALE_ENV_VARS = ('LC_ALL', 'LC_MESSAGES', 'LANG')
NO_LOCALES = ('C', 'POSIX')

# escaped and raw whitespace both collapse to a single space so a label always fits on one protocol line
ESCAPE_SEQUENCES = {'s': ' ', 'n': ' ', 't': ' ', 'r': ' ', '\\': '\\'}
RAW_WHITESPACE = str.maketrans({'\n': ' ', '\r': ' ', '\t': ' '})

logger = logging.getLogger(__name__)


def get_data_dirs(environ: Optional[Mapping[str, str]] = None) -> list[Path]:
    """ XDG base directories, most important first """
    if environ is None:
        environ = os.environ
    data_home = environ.get('XDG_DATA_HOME') or os.path.expanduser(DEFAULT_DATA_HOME)
    data_dirs = environ.get('XDG_DATA_DIRS') or DEFAULT_DATA_DIRS
    return [Path(data_home)] + [Path(d) for d in data_dirs.split(os.pathsep) if d]


def get_locale_name(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    if environ is None:
        environ = os.environ
    for variable in LOCALE_ENV_VARS:
        value = environ.get(variable)
        if value:
            return value
    return None


def get_locale_keys(locale_name: Optional[str]) -> list[str]:
    """
    Build the `Name[...]` suffixes to try for a POSIX locale name

    :param locale_name: locale in the form lang_COUNTRY.ENCODING@MODIFIER, every part but lang being optional
    :return: suffixes from most to least specific, empty when no localized lookup applies
    """
    if not locale_name:
        return []

    locale_name, _, modifier = locale_name.partition('@')
    locale_name = locale_name.split('.', 1)[0]
    if not locale_name or locale_name in NO_LOCALES:
        return []

    lang, _, country = locale_name.partition('_')
    keys = []
    if country and modifier:
        keys.append(f'{lang}_{country}@{modifier}')
    if country:
        keys.append(f'{lang}_{country}')
    if modifier:
        keys.append(f'{lang}@{modifier}')
    keys.append(lang)
    return keys


def unescape_value(value: str) -> str:
    result = []
    chars = iter(value.translate(RAW_WHITESPACE))
    for char in chars:
        if char != '\\':
            result.append(char)
            continue
        escaped = next(chars, '')
        result.append(ESCAPE_SEQUENCES.get(escaped, '\\' + escaped))
    return ''.join(result)


def get_desktop_file_id(application_dir: Path, path: Path) -> str:
    relative = path.relative_to(application_dir)
    return '-'.join(relative.parts)[:-len(DESKTOP_FILE_SUFFIX)]


def parse_desktop_entry(path: Path) -> Optional[dict[str, str]]:
    """ parse the main group of a desktop entry file, or return None if it can't be used """
    parser = configparser.ConfigParser(interpolation=None, strict=False, delimiters=('=',), comment_prefixes=('#',))
    parser.optionxform = str
    try:
        with open(path, encoding='utf-8') as fd:
            parser.read_file(fd)
    except (OSError, UnicodeDecodeError, configparser.Error) as e:
        logger.warning(f'skipping unreadable desktop entry {path}: {e}')
        return None

    if not parser.has_section(DESKTOP_ENTRY_GROUP):
        logger.debug(f'{path} has no [{DESKTOP_ENTRY_GROUP}] group')
        return None
    return dict(parser.items(DESKTOP_ENTRY_GROUP))


def _raise_registry_error(error: OSError) -> None:
    raise RegistryError(f'failed to enumerate {error.filename}') from error


class DesktopEntryRegistry(ApplicationRegistry):
    """
    Applications described by freedesktop.org desktop entries.

    Entries marked `Hidden=true` were deleted for the current user but are still on disk; they are reported like
    any other application.
    """

    def __init__(self, application_dirs: list[Path], locale_name: Optional[str] = None):
        super().__init__()
        self.application_dirs = application_dirs
        self.locale_keys = get_locale_keys(locale_name)

    def list_applications(self) -> list[ApplicationRecord]:
        records = []
        for identifier, paths in sorted(self._collect().items()):
            record = self._resolve(identifier, paths)
            if record is not None:
                records.append(record)
        self.logger.debug(f'found {len(records)} applications')
        return records

    def find_application(self, identifier: str) -> Optional[ApplicationRecord]:
        paths = self._collect().get(identifier)
        if not paths:
            return None
        return self._resolve(identifier, paths)

    def get_name(self, entry: dict[str, str]) -> Optional[str]:
        for key in [f'Name[{suffix}]' for suffix in self.locale_keys] + ['Name']:
            value = entry.get(key)
            if value:
                return unescape_value(value)
        return None

    def _collect(self) -> dict[str, list[Path]]:
        """ map each desktop file id to its files, ordered by directory precedence """
        entries = {}
        for application_dir in self.application_dirs:
            if not application_dir.is_dir():
                continue
            for root, dirs, files in os.walk(application_dir, onerror=_raise_registry_error):
                dirs.sort()
                for filename in sorted(files):
                    if not filename.endswith(DESKTOP_FILE_SUFFIX):
                        continue
                    path = Path(root) / filename
                    entries.setdefault(get_desktop_file_id(application_dir, path), []).append(path)
        return entries

    def _resolve(self, identifier: str, paths: list[Path]) -> Optional[ApplicationRecord]:
        found = False
        for path in paths:
            entry = parse_desktop_entry(path)
            if entry is None or entry.get('Type') != APPLICATION_TYPE:
                if not found and entry is not None:
                    # the entry that shadows all others isn't an application
                    return None
                continue
            found = True
            label = self.get_name(entry)
            if label:
                return ApplicationRecord(identifier=identifier, label=label)

        if not found:
            return None
        return ApplicationRecord(identifier=identifier, label=identifier)


def create_using_xdg(environ: Optional[Mapping[str, str]] = None) -> DesktopEntryRegistry:
    """ locate the host's application directories and wrap them in a registry """
    if environ is None:
        environ = os.environ
    application_dirs = [data_dir / APPLICATIONS_SUBDIR for data_dir in get_data_dirs(environ)]
    if not any(application_dir.is_dir() for application_dir in application_dirs):
        raise BootstrapError(f'no application directory found in: {", ".join(map(str, application_dirs))}')
    logger.debug(f'using application directories: {application_dirs}')
    return DesktopEntryRegistry(application_dirs, locale_name=get_locale_name(environ))
