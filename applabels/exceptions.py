__all__ = [
    'AppLabelsException',
    'ArgumentError',
    'BootstrapError',
    'ClientError',
    'InvalidResponseError',
    'LabelTimeoutError',
    'MissingArgumentError',
    'RegistryError',
    'UnknownArgumentError',
]

from typing import Optional


class AppLabelsException(Exception):
    pass


class ArgumentError(AppLabelsException):
    pass


class MissingArgumentError(ArgumentError):
    """No mode or application identifier was given"""

    pass


class UnknownArgumentError(ArgumentError):
    def __init__(self, argument: str):
        super().__init__(argument)
        self.argument = argument


class BootstrapError(AppLabelsException):
    """The application registry could not be obtained"""

    pass


class RegistryError(AppLabelsException):
    """The application registry failed in a way other than a missing application"""

    pass


class ClientError(AppLabelsException):
    pass


class InvalidResponseError(ClientError):
    def __init__(self, line: str):
        super().__init__(line)
        self.line = line


class LabelTimeoutError(ClientError, TimeoutError):
    def __init__(self, identifier: Optional[str] = None):
        super().__init__(identifier)
        self.identifier = identifier
