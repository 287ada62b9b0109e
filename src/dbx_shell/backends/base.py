from abc import ABC, abstractmethod
from typing import List


class BaseBackend(ABC):
    """The contract every database backend offers to the interactive shell."""

    kind: str = ""

    @abstractmethod
    async def connect(self) -> None:
        """Opens the driver connection; raises ConnectionError on failure."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def database_name(self) -> str:
        raise NotImplementedError

    @abstractmethod
    async def use(self, database_name: str) -> None:
        """Makes `database_name` the active database."""
        raise NotImplementedError

    @abstractmethod
    async def list_databases(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    async def list_names(self) -> List[str]:
        """Lists the collections or tables of the active database."""
        raise NotImplementedError
