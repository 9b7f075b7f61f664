# storage/base.py
from abc import ABC, abstractmethod
from typing import List
from .dto import ObjectRecord


class StorageGateway(ABC):
    """
    Abstract base class for an object-storage gateway.
    Defines the narrow, stateless interface that all specific backends
    (e.g., Azure Blob Storage, Dropbox) must implement. Every method except
    resolve_access_url is a self-contained network call that may fail with a
    GatewayError subclass.
    """

    @abstractmethod
    def list_objects(self, container: str) -> List[ObjectRecord]:
        """
        Lists every object in a container.
        Only returns once the full enumeration is exhausted; a failure on any
        page fails the whole call.

        :param container: The name of the container to list.
        :return: A list of standardized ObjectRecord DTOs.
        :raises UnauthorizedError, NetworkFailureError, NotFoundError:
        """
        pass

    @abstractmethod
    def get_object_metadata(self, container: str, key: str) -> ObjectRecord:
        """
        Fetches the metadata of a single object.

        :param container: The name of the container holding the object.
        :param key: The object's key.
        :raises UnauthorizedError, NetworkFailureError, NotFoundError:
        """
        pass

    @abstractmethod
    def write_object(self, container: str, key: str, data: bytes, content_type: str):
        """
        Writes a new object. Either the object is fully listable afterwards or
        the call fails and nothing is visible. Existing keys are never overwritten.

        :param container: The name of the destination container.
        :param key: The key for the new object.
        :param data: The object's bytes.
        :param content_type: The MIME type stored with the object.
        :raises UnauthorizedError, NetworkFailureError, QuotaExceededError, KeyConflictError:
        """
        pass

    @abstractmethod
    def resolve_access_url(self, container: str, key: str) -> str:
        """
        Returns the address at which an object's bytes can be retrieved.
        Pure: derived from configuration and key, no network call.
        """
        pass

    @abstractmethod
    def verify_container_exists(self, container: str):
        """
        Verifies that a container exists and is accessible.

        :raises NotFoundError: If the container does not exist.
        """
        pass
