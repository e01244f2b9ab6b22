"""
Kubernetes API seam.

Wraps the blocking `kubernetes` client behind a small resource-kind
interface and translates ApiException into the reflector's error types.
Nothing outside this module touches kubernetes client models.
"""

import base64
from typing import Any, Callable, Generic, Optional, TypeVar

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from common.constants import (
    CRD_LIST_TIMEOUT_SECONDS,
    HTTP_CONFLICT,
    HTTP_NOT_FOUND,
)
from common.logging_config import get_logger
from common.types import Secret, SecretData, SecretRef
from reflector.exceptions import (
    ApiCallError,
    ConflictError,
    MalformedSecretError,
    NotFoundError,
    TransportError,
)

logger = get_logger(__name__)

T = TypeVar("T")


def translate_api_exception(exc: ApiException, full_name: str) -> ApiCallError:
    """
    Map an ApiException onto the reflector's error taxonomy.

    Args:
        exc: Exception raised by the kubernetes client
        full_name: "<namespace>/<name>" of the object involved

    Returns:
        NotFoundError, ConflictError or TransportError
    """
    status = exc.status
    message = f"{full_name}: {status} {exc.reason}"
    if status == HTTP_NOT_FOUND:
        return NotFoundError(message, status=status, full_name=full_name)
    if status == HTTP_CONFLICT:
        return ConflictError(message, status=status, full_name=full_name)
    return TransportError(message, status=status, full_name=full_name)


class ResourceKind(Generic[T]):
    """
    Capability of one namespaced resource kind: read, create, replace and
    conversion between the client's model and the domain type T.
    """

    kind: str = ""

    def read(self, core: Any, namespace: str, name: str) -> Any:
        raise NotImplementedError

    def create(self, core: Any, namespace: str, body: Any) -> Any:
        raise NotImplementedError

    def replace(self, core: Any, namespace: str, name: str, body: Any) -> Any:
        raise NotImplementedError

    def to_domain(self, obj: Any) -> T:
        raise NotImplementedError

    def to_body(self, item: T) -> Any:
        raise NotImplementedError


class SecretKind(ResourceKind[Secret]):
    """core/v1 Secret, with data base64-decoded into bytes."""

    kind = "Secret"

    def read(self, core: client.CoreV1Api, namespace: str, name: str) -> client.V1Secret:
        return core.read_namespaced_secret(name=name, namespace=namespace)

    def create(self, core: client.CoreV1Api, namespace: str, body: client.V1Secret) -> client.V1Secret:
        return core.create_namespaced_secret(namespace=namespace, body=body)

    def replace(self, core: client.CoreV1Api, namespace: str, name: str, body: client.V1Secret) -> client.V1Secret:
        return core.replace_namespaced_secret(name=name, namespace=namespace, body=body)

    def to_domain(self, obj: client.V1Secret) -> Secret:
        metadata = obj.metadata
        if metadata is None or not metadata.name or not metadata.namespace:
            raise MalformedSecretError("Secret object is missing metadata.name or metadata.namespace")

        try:
            data = {key: base64.b64decode(value) for key, value in (obj.data or {}).items()}
        except (TypeError, ValueError) as e:
            raise MalformedSecretError(f"Secret {metadata.namespace}/{metadata.name} has undecodable data: {e}") from e

        return Secret(
            ref=SecretRef(namespace=metadata.namespace, name=metadata.name),
            data=SecretData(data=data, type=obj.type),
            annotations=dict(metadata.annotations or {}),
            labels=dict(metadata.labels or {}),
            resource_version=metadata.resource_version,
        )

    def to_body(self, item: Secret) -> client.V1Secret:
        return client.V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=client.V1ObjectMeta(
                name=item.ref.name,
                namespace=item.ref.namespace,
                annotations=dict(item.annotations) or None,
                labels=dict(item.labels) or None,
                resource_version=item.resource_version,
            ),
            data={key: base64.b64encode(value).decode("ascii") for key, value in item.data.data.items()},
            type=item.data.type,
        )


SECRET_KIND = SecretKind()


class NamespacedApi(Generic[T]):
    """
    API handle bound to one namespace and one resource kind.

    All methods block on the network; callers on the event loop must run
    them in an executor.
    """

    def __init__(self, core: Any, namespace: str, kind: ResourceKind[T]):
        self.core = core
        self.namespace = namespace
        self.kind = kind

    def _invoke(self, name: str, func: Callable, *args) -> T:
        full_name = f"{self.namespace}/{name}"
        try:
            obj = func(self.core, self.namespace, *args)
        except ApiException as e:
            raise translate_api_exception(e, full_name) from e
        except HTTPError as e:
            raise TransportError(f"{full_name}: {e}", full_name=full_name) from e
        return self.kind.to_domain(obj)

    def get(self, name: str) -> T:
        return self._invoke(name, self.kind.read, name)

    def create(self, item: T) -> T:
        body = self.kind.to_body(item)
        return self._invoke(body.metadata.name, self.kind.create, body)

    def replace(self, name: str, item: T) -> T:
        body = self.kind.to_body(item)
        return self._invoke(name, self.kind.replace, name, body)


def secret_handle_factory(core: client.CoreV1Api) -> Callable[[str], NamespacedApi[Secret]]:
    """Factory the client cache uses to build one Secret handle per namespace."""
    def build(namespace: str) -> NamespacedApi[Secret]:
        return NamespacedApi(core, namespace, SECRET_KIND)
    return build


class KubeApi:
    """Cluster-scoped helpers that do not fit a namespaced handle."""

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.extensions = client.ApiextensionsV1Api(api_client)

    def is_crd_installed(self, crd_name: str) -> bool:
        """
        Check whether a CustomResourceDefinition is installed.

        Args:
            crd_name: CRD name, e.g. 'certificates.cert-manager.io'

        Returns:
            True if at least one matching CRD is listed, False otherwise
            (including when the list call fails)
        """
        field_selector = f"metadata.name={crd_name}" if crd_name else None
        try:
            crds = self.extensions.list_custom_resource_definition(
                field_selector=field_selector,
                timeout_seconds=CRD_LIST_TIMEOUT_SECONDS,
            )
        except ApiException as e:
            logger.error(f"Failed checking CRD {crd_name}: {e.status} {e.reason}")
            return False
        except HTTPError as e:
            logger.error(f"Failed checking CRD {crd_name}: {e}")
            return False

        found = len(crds.items or []) > 0
        if found:
            logger.info(f"Found CRD {crd_name}")
        else:
            logger.info(f"CRD {crd_name} is not installed")
        return found


def load_kube_client(context: Optional[str] = None) -> client.ApiClient:
    """
    Build an ApiClient from in-cluster service account credentials, falling
    back to the local kubeconfig.
    """
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config(context=context)
        logger.info("Loaded Kubernetes configuration from kubeconfig")
    return client.ApiClient()

