import logging
from abc import ABC, abstractmethod
from typing import Optional

from applabels.application import ApplicationRecord


class ApplicationRegistry(ABC):
    """
    Read-only view of the applications known to the host
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__module__)

    @abstractmethod
    def list_applications(self) -> list[ApplicationRecord]:
        """ fresh snapshot of every application, including ones hidden for the current user """
        pass

    @abstractmethod
    def find_application(self, identifier: str) -> Optional[ApplicationRecord]:
        """ return the matching record, or None if the identifier is unknown """
        pass

    def get_label(self, identifier: str) -> Optional[str]:
        record = self.find_application(identifier)
        if record is None:
            return None
        return record.label
