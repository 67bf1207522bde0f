"""Provision TLS material and webhook configurations for the admission webhook.

This runs once, before the webhook server starts (typically as an init
container). It generates a CA and a server certificate signed by it,
writes the server key pair where the webhook server expects it, and
creates or updates the ValidatingWebhookConfiguration and
MutatingWebhookConfiguration that point the API server at the webhook.

Settings are read from the environment:

    CERT_DIR            where tls.crt and tls.key are written
    WEBHOOK_NAMESPACE   namespace of the webhook service
    WEBHOOK_SERVICE     name of the webhook service
    VALIDATE_CONFIG     name of the ValidatingWebhookConfiguration (skipped if unset)
    MUTATE_CONFIG       name of the MutatingWebhookConfiguration (skipped if unset)
    VALIDATE_PATH       URL path of the validating endpoint
    MUTATE_PATH         URL path of the mutating endpoint
    DRY_RUN             print the configurations as YAML instead of applying them
"""

import base64
import datetime
import logging
import os
import sys

import yaml

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from kubernetes import config, client
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import DynamicApiError, NotFoundError
from typing import Any, Callable
from typing_extensions import Protocol, override

from exc import ProvisionerError

LOG = logging.getLogger(__name__)

ADMISSION_API_VERSION = "admissionregistration.k8s.io/v1"


class DEFAULTS:
    CERT_DIR = "/etc/webhook/certs"
    WEBHOOK_NAMESPACE = "default"
    WEBHOOK_SERVICE = "admission-registry"
    VALIDATE_CONFIG = ""
    MUTATE_CONFIG = ""
    VALIDATE_PATH = "/validate"
    MUTATE_PATH = "/mutate"
    DRY_RUN = ""


KEY_SIZE = 4096
VALIDITY = datetime.timedelta(days=3650)
ORGANIZATION = "admission-registry"


def dns_names(service: str, namespace: str) -> list[str]:
    return [
        service,
        f"{service}.{namespace}",
        f"{service}.{namespace}.svc",
        f"{service}.{namespace}.svc.cluster.local",
    ]


def private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def ca_certificate(key: rsa.RSAPrivateKey) -> x509.Certificate:
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, f"{ORGANIZATION}-ca"),
        ]
    )
    now = datetime.datetime.now(datetime.timezone.utc)

    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )


def server_certificate(
    key: rsa.RSAPrivateKey,
    ca_key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    service: str,
    namespace: str,
) -> x509.Certificate:
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, f"{service}.{namespace}.svc"),
        ]
    )
    now = datetime.datetime.now(datetime.timezone.utc)

    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + VALIDITY)
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName(name) for name in dns_names(service, namespace)]
            ),
            critical=False,
        )
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
            ),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )


def generate_certificates(cert_dir: str, service: str, namespace: str) -> bytes:
    """Write a CA-signed tls.crt/tls.key pair to `cert_dir` and return the
    PEM-encoded CA certificate."""

    LOG.info("generating CA key and certificate")
    ca_key = private_key()
    ca_cert = ca_certificate(ca_key)

    LOG.info("generating server key and certificate for %s", dns_names(service, namespace))
    server_key = private_key()
    server_cert = server_certificate(server_key, ca_key, ca_cert, service, namespace)

    try:
        os.makedirs(cert_dir, exist_ok=True)
        with open(os.path.join(cert_dir, "tls.crt"), "wb") as fd:
            fd.write(server_cert.public_bytes(serialization.Encoding.PEM))
        with open(os.path.join(cert_dir, "tls.key"), "wb") as fd:
            fd.write(
                server_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.TraditionalOpenSSL,
                    encryption_algorithm=serialization.NoEncryption(),
                )
            )
    except OSError as err:
        LOG.error("unable to write certificates to %s: %s", cert_dir, err)
        raise ProvisionerError(f"unable to write certificates to {cert_dir}")

    LOG.info("webhook server tls generated in %s", cert_dir)
    return ca_cert.public_bytes(serialization.Encoding.PEM)


def webhook(name: str, service: str, namespace: str, path: str, ca_bundle: bytes, rules: list[dict]) -> dict:
    return {
        "name": name,
        "clientConfig": {
            "service": {
                "name": service,
                "namespace": namespace,
                "path": path,
                "port": 443,
            },
            "caBundle": base64.b64encode(ca_bundle).decode(),
        },
        "rules": rules,
        "admissionReviewVersions": ["v1"],
        "sideEffects": "None",
    }


def validating_webhook_configuration(
    name: str, service: str, namespace: str, path: str, ca_bundle: bytes
) -> dict:
    rules = [
        {
            "operations": ["CREATE"],
            "apiGroups": [""],
            "apiVersions": ["v1"],
            "resources": ["pods"],
        }
    ]
    return {
        "apiVersion": ADMISSION_API_VERSION,
        "kind": "ValidatingWebhookConfiguration",
        "metadata": {"name": name},
        "webhooks": [
            webhook("validate.admission-registry.io", service, namespace, path, ca_bundle, rules)
        ],
    }


def mutating_webhook_configuration(
    name: str, service: str, namespace: str, path: str, ca_bundle: bytes
) -> dict:
    rules = [
        {
            "operations": ["CREATE"],
            "apiGroups": ["", "apps"],
            "apiVersions": ["v1"],
            "resources": ["deployments", "services"],
        }
    ]
    return {
        "apiVersion": ADMISSION_API_VERSION,
        "kind": "MutatingWebhookConfiguration",
        "metadata": {"name": name},
        "webhooks": [
            webhook("mutate.admission-registry.io", service, namespace, path, ca_bundle, rules)
        ],
    }


def build_configurations(settings: dict[str, Any], ca_bundle: bytes) -> list[dict]:
    configurations = []
    if settings["VALIDATE_CONFIG"]:
        configurations.append(
            validating_webhook_configuration(
                settings["VALIDATE_CONFIG"],
                settings["WEBHOOK_SERVICE"],
                settings["WEBHOOK_NAMESPACE"],
                settings["VALIDATE_PATH"],
                ca_bundle,
            )
        )
    if settings["MUTATE_CONFIG"]:
        configurations.append(
            mutating_webhook_configuration(
                settings["MUTATE_CONFIG"],
                settings["WEBHOOK_SERVICE"],
                settings["WEBHOOK_NAMESPACE"],
                settings["MUTATE_PATH"],
                ca_bundle,
            )
        )
    return configurations


class Registrar(Protocol):
    def apply(self, body: dict) -> None: ...


class KubernetesRegistrar(Registrar):
    def __init__(self):
        """Allocate a Kubernetes dynamic client"""

        super().__init__()

        try:
            config.load_config()
        except config.ConfigException as err:
            LOG.warning("unable to configure Kubernetes client: %s", err)
            raise ProvisionerError("unable to configure Kubernetes client")

        self._client = DynamicClient(client.ApiClient())

    @override
    def apply(self, body):
        """Create the object described by `body`, or replace it if it
        already exists."""

        kind = body["kind"]
        name = body["metadata"]["name"]

        try:
            resource = self._client.resources.get(
                api_version=body["apiVersion"], kind=kind
            )
            try:
                existing = resource.get(name=name)
            except NotFoundError:
                resource.create(body=body)
                LOG.info("%s %s created", kind, name)
                return

            body = {
                **body,
                "metadata": {
                    **body["metadata"],
                    "resourceVersion": existing.metadata.resourceVersion,
                },
            }
            resource.replace(body=body)
            LOG.info("%s %s replaced", kind, name)
        except DynamicApiError as err:
            LOG.error("failed to apply %s %s: %s", kind, name, err)
            raise ProvisionerError(f"failed to apply {kind} {name}")


def load_settings(environ=os.environ) -> dict[str, Any]:
    return {
        key: environ.get(key, getattr(DEFAULTS, key))
        for key in vars(DEFAULTS)
        if key.isupper()
    }


def provision(
    settings: dict[str, Any],
    registrar_factory: Callable[[], Registrar] = KubernetesRegistrar,
):
    ca_bundle = generate_certificates(
        settings["CERT_DIR"], settings["WEBHOOK_SERVICE"], settings["WEBHOOK_NAMESPACE"]
    )
    configurations = build_configurations(settings, ca_bundle)

    if settings["DRY_RUN"]:
        print(yaml.safe_dump_all(configurations), end="")
        return

    registrar = registrar_factory()
    for body in configurations:
        registrar.apply(body)

    LOG.info("webhook admission configuration objects applied successfully")


def main():
    logging.basicConfig(level="INFO")

    try:
        provision(load_settings())
    except ProvisionerError as err:
        LOG.error("provisioning failed: %s", err)
        sys.exit(1)


if __name__ == "__main__":
    main()
