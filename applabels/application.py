import dataclasses


@dataclasses.dataclass(frozen=True)
class ApplicationRecord:
    identifier: str
    label: str

    def to_line(self) -> str:
        return f'{self.identifier}:{self.label}'
