import logging
import sys

import click
import coloredlogs

from applabels.exceptions import BootstrapError, MissingArgumentError, RegistryError, UnknownArgumentError
from applabels.services.desktop_entries import create_using_xdg
from applabels.services.label_server import LabelServer
from applabels.services.registry import ApplicationRegistry

# stdout carries the protocol, keep log records on stderr and quiet by default
coloredlogs.install(level=logging.WARNING)

logger = logging.getLogger(__name__)

USAGE = 'Usage: applabels <package-id> | --list-all | --serve'

LIST_ALL_OPTION = '--list-all'
SERVE_OPTION = '--serve'

SUCCESS_EXIT_CODE = 0
FAILURE_EXIT_CODE = 1
USAGE_ERROR_EXIT_CODE = 2

# options are matched by hand against the first argument, so let click hand over everything untouched
CONTEXT_SETTINGS = dict(help_option_names=[], ignore_unknown_options=True, max_content_width=400)


def list_all(registry: ApplicationRegistry) -> None:
    for record in registry.list_applications():
        click.echo(record.to_line())


def print_label(registry: ApplicationRegistry, identifier: str) -> None:
    label = registry.get_label(identifier)
    if label is None:
        # unknown applications print nothing
        logger.debug(f'{identifier} not found')
        return
    click.echo(label)


def serve(registry: ApplicationRegistry) -> None:
    # stderr is often merged into the protocol stream (adb shell), so only failures may be logged while serving
    coloredlogs.set_level(logging.ERROR)
    LabelServer(registry, sys.stdin, sys.stdout).serve()


@click.command(context_settings=CONTEXT_SETTINGS)
@click.argument('arguments', nargs=-1, type=click.UNPROCESSED)
def cli(arguments: tuple[str, ...]) -> None:
    """
    \b
    Print installed applications and their labels:
        applabels <package-id>   print the label of a single application
        applabels --list-all     print every application as <package-id>:<label>
        applabels --serve        answer list-all / find:<package-id> / exit on stdin
    """
    if not arguments:
        raise MissingArgumentError()

    argument = arguments[0]
    if argument.startswith('-') and argument not in (LIST_ALL_OPTION, SERVE_OPTION):
        raise UnknownArgumentError(argument)

    registry = create_using_xdg()

    if argument == LIST_ALL_OPTION:
        list_all(registry)
    elif argument == SERVE_OPTION:
        serve(registry)
    else:
        print_label(registry, argument)


def invoke_cli_with_error_handling() -> int:
    """
    Invoke the command line interface and return the process exit code
    """
    try:
        cli(standalone_mode=False)
    except MissingArgumentError:
        click.echo(USAGE, err=True)
        return USAGE_ERROR_EXIT_CODE
    except UnknownArgumentError as e:
        click.echo(f'Unknown argument: {e.argument}', err=True)
        return USAGE_ERROR_EXIT_CODE
    except BootstrapError as e:
        logger.error(f'Failed to obtain the application registry: {e}')
        return FAILURE_EXIT_CODE
    except RegistryError as e:
        logger.error(f'Application registry failed: {e}')
        return FAILURE_EXIT_CODE

    return SUCCESS_EXIT_CODE


def main() -> None:
    sys.exit(invoke_cli_with_error_handling())


if __name__ == '__main__':
    main()
