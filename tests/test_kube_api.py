"""Unit tests for the Kubernetes API seam."""

import base64
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import MaxRetryError

from common.types import SecretRef
from reflector.exceptions import (
    ConflictError,
    MalformedSecretError,
    NotFoundError,
    TransportError,
)
from reflector.kube_api import (
    SECRET_KIND,
    KubeApi,
    NamespacedApi,
    secret_handle_factory,
    translate_api_exception,
)
from tests.fakes import make_secret


def v1_secret(namespace, name, data, secret_type="Opaque", annotations=None, resource_version="7"):
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=annotations,
            resource_version=resource_version,
        ),
        data={k: base64.b64encode(v).decode("ascii") for k, v in data.items()},
        type=secret_type,
    )


class TestSecretKindConversion:
    """Test V1Secret <-> domain Secret conversion."""

    def test_to_domain_decodes_data(self):
        secret = SECRET_KIND.to_domain(v1_secret("ns-a", "db-creds", {"password": b"p1"}))

        assert secret.ref == SecretRef("ns-a", "db-creds")
        assert secret.data.data == {"password": b"p1"}
        assert secret.data.type == "Opaque"
        assert secret.resource_version == "7"

    def test_to_domain_handles_empty_data(self):
        obj = v1_secret("ns-a", "empty", {})
        obj.data = None

        assert SECRET_KIND.to_domain(obj).data.data == {}

    def test_to_domain_rejects_missing_namespace(self):
        obj = v1_secret("ns-a", "db-creds", {})
        obj.metadata.namespace = None

        with pytest.raises(MalformedSecretError):
            SECRET_KIND.to_domain(obj)

    def test_to_body_encodes_data_and_annotations(self):
        secret = make_secret(
            "ns-b/db-creds",
            {"password": b"p1"},
            secret_type="kubernetes.io/basic-auth",
            annotations={"secret-reflector/managed-by": "secret-reflector"},
        )

        body = SECRET_KIND.to_body(secret)

        assert body.metadata.name == "db-creds"
        assert body.metadata.namespace == "ns-b"
        assert body.metadata.annotations == {"secret-reflector/managed-by": "secret-reflector"}
        assert body.data == {"password": base64.b64encode(b"p1").decode("ascii")}
        assert body.type == "kubernetes.io/basic-auth"

    def test_binary_payload_survives_conversion(self):
        payload = bytes(range(256))
        body = SECRET_KIND.to_body(make_secret("ns-b/blob", {"blob": payload}))

        assert SECRET_KIND.to_domain(body).data.data == {"blob": payload}


class TestErrorTranslation:
    """Test ApiException mapping."""

    @pytest.mark.parametrize("status,expected", [
        (404, NotFoundError),
        (409, ConflictError),
        (403, TransportError),
        (500, TransportError),
        (None, TransportError),
    ])
    def test_status_maps_to_error_type(self, status, expected):
        error = translate_api_exception(ApiException(status=status, reason="x"), "ns-a/db-creds")

        assert isinstance(error, expected)
        assert error.status == status
        assert error.full_name == "ns-a/db-creds"


class TestNamespacedApi:
    """Test namespaced handle calls against a mocked CoreV1Api."""

    def test_get_reads_in_bound_namespace(self):
        core = MagicMock()
        core.read_namespaced_secret.return_value = v1_secret("ns-b", "db-creds", {"password": b"p0"})
        api = NamespacedApi(core, "ns-b", SECRET_KIND)

        secret = api.get("db-creds")

        core.read_namespaced_secret.assert_called_once_with(name="db-creds", namespace="ns-b")
        assert secret.data.data == {"password": b"p0"}

    def test_get_not_found(self):
        core = MagicMock()
        core.read_namespaced_secret.side_effect = ApiException(status=404, reason="Not Found")
        api = NamespacedApi(core, "ns-b", SECRET_KIND)

        with pytest.raises(NotFoundError) as exc_info:
            api.get("db-creds")

        assert exc_info.value.full_name == "ns-b/db-creds"

    def test_create_conflict(self):
        core = MagicMock()
        core.create_namespaced_secret.side_effect = ApiException(status=409, reason="AlreadyExists")
        api = NamespacedApi(core, "ns-b", SECRET_KIND)

        with pytest.raises(ConflictError):
            api.create(make_secret("ns-b/db-creds", {"password": b"p1"}))

    def test_create_sends_encoded_body(self):
        core = MagicMock()
        core.create_namespaced_secret.side_effect = lambda namespace, body: body
        api = NamespacedApi(core, "ns-b", SECRET_KIND)

        created = api.create(make_secret("ns-b/db-creds", {"password": b"p1"}))

        _, kwargs = core.create_namespaced_secret.call_args
        assert kwargs["namespace"] == "ns-b"
        assert kwargs["body"].data == {"password": base64.b64encode(b"p1").decode("ascii")}
        assert created.data.data == {"password": b"p1"}

    def test_replace_passes_resource_version(self):
        core = MagicMock()
        core.replace_namespaced_secret.side_effect = lambda name, namespace, body: body
        api = NamespacedApi(core, "ns-c", SECRET_KIND)

        api.replace("db-creds", make_secret("ns-c/db-creds", {"password": b"p1"}, resource_version="42"))

        _, kwargs = core.replace_namespaced_secret.call_args
        assert kwargs["name"] == "db-creds"
        assert kwargs["body"].metadata.resource_version == "42"

    def test_network_failure_is_transport_error(self):
        core = MagicMock()
        core.read_namespaced_secret.side_effect = MaxRetryError(pool=None, url="/api/v1")
        api = NamespacedApi(core, "ns-b", SECRET_KIND)

        with pytest.raises(TransportError):
            api.get("db-creds")

    def test_handle_factory_binds_namespace(self):
        core = MagicMock()
        handle = secret_handle_factory(core)("ns-d")

        assert handle.namespace == "ns-d"
        assert handle.core is core
        assert handle.kind is SECRET_KIND


class TestCrdProbe:
    """Test CustomResourceDefinition probing."""

    def _kube(self, extensions):
        kube = KubeApi(MagicMock())
        kube.extensions = extensions
        return kube

    def test_installed_crd_is_found(self):
        extensions = MagicMock()
        extensions.list_custom_resource_definition.return_value = MagicMock(items=[MagicMock()])

        assert self._kube(extensions).is_crd_installed("certificates.cert-manager.io") is True
        extensions.list_custom_resource_definition.assert_called_once_with(
            field_selector="metadata.name=certificates.cert-manager.io",
            timeout_seconds=20,
        )

    def test_missing_crd(self):
        extensions = MagicMock()
        extensions.list_custom_resource_definition.return_value = MagicMock(items=[])

        assert self._kube(extensions).is_crd_installed("certificates.cert-manager.io") is False

    def test_api_failure_reports_not_installed(self):
        extensions = MagicMock()
        extensions.list_custom_resource_definition.side_effect = ApiException(status=403, reason="Forbidden")

        assert self._kube(extensions).is_crd_installed("certificates.cert-manager.io") is False
