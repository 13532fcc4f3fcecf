import datetime
import logging
import os
import socket
import tempfile
from typing import Dict, Optional, Sequence, Tuple

from asyncua import ua
from asyncua.crypto.security_policies import (
    SecurityPolicyAes128Sha256RsaOaep,
    SecurityPolicyAes256Sha256RsaPss,
    SecurityPolicyBasic128Rsa15,
    SecurityPolicyBasic256,
    SecurityPolicyBasic256Sha256,
)
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from uapoller._UAErrors_ import AuthenticationError, SecurityNegotiationError

POLICY_NONE_URI = "http://opcfoundation.org/UA/SecurityPolicy#None"

POLICY_CLASSES = {
    "Basic128Rsa15": SecurityPolicyBasic128Rsa15,
    "Basic256": SecurityPolicyBasic256,
    "Basic256Sha256": SecurityPolicyBasic256Sha256,
    "Aes128Sha256RsaOaep": SecurityPolicyAes128Sha256RsaOaep,
    "Aes256Sha256RsaPss": SecurityPolicyAes256Sha256RsaPss,
}
POLICY_URIS = {name: cls.URI for name, cls in POLICY_CLASSES.items()}
POLICY_URIS["None"] = POLICY_NONE_URI
POLICY_BY_URI = {cls.URI: cls for cls in POLICY_CLASSES.values()}

SECURITY_MODES = {
    "None": ua.MessageSecurityMode.None_,
    "Sign": ua.MessageSecurityMode.Sign,
    "SignAndEncrypt": ua.MessageSecurityMode.SignAndEncrypt,
}

APPLICATION_URI = "urn:uapoller:client"

# one self-signed certificate per process and application uri
_generated_certificates: Dict[str, Tuple[str, str]] = {}


def security_disabled(policy: str, mode: str) -> bool:
    return policy == "None" or mode == "None"


def select_endpoint(endpoints: Sequence, policy: str, mode: str):
    """
    Pick the server endpoint matching the configured policy and mode.

    "auto" for either setting accepts anything the server advertises that this
    client supports, preferring the endpoint with the highest SecurityLevel.
    """
    supported = [ep for ep in endpoints if ep.SecurityPolicyUri in POLICY_URIS.values()]
    candidates = supported
    if policy != "auto":
        candidates = [ep for ep in candidates if ep.SecurityPolicyUri == POLICY_URIS[policy]]
    if mode != "auto":
        candidates = [ep for ep in candidates if ep.SecurityMode == SECURITY_MODES[mode]]
    if not candidates:
        advertised = [f"{ep.SecurityPolicyUri.rsplit('#', 1)[-1]}/{_mode_name(ep.SecurityMode)}" for ep in endpoints]
        raise SecurityNegotiationError(
            f"server does not offer security policy {policy!r} with mode {mode!r}; advertised: {advertised}")
    best = candidates[0]
    for ep in candidates[1:]:
        if (ep.SecurityLevel or 0) > (best.SecurityLevel or 0):
            best = ep
    logging.debug(f"_UASecurity_.select_endpoint: Selected {best.SecurityPolicyUri} "
                  f"mode={_mode_name(best.SecurityMode)} level={best.SecurityLevel}")
    return best


def _mode_name(mode) -> str:
    name = getattr(mode, "name", str(mode))
    return "None" if name == "None_" else name


def load_certificate(path: str) -> x509.Certificate:
    """Load a PEM or DER certificate, raising AuthenticationError if unusable."""
    data = _read_file(path, "certificate")
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        pass
    try:
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise AuthenticationError(f"certificate {path} is not a valid PEM or DER certificate: {e}") from e


def load_private_key(path: str):
    """Load an unencrypted PEM or DER private key, raising AuthenticationError if unusable."""
    data = _read_file(path, "private key")
    try:
        return serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError):
        pass
    try:
        return serialization.load_der_private_key(data, password=None)
    except (ValueError, TypeError) as e:
        raise AuthenticationError(f"private key {path} is not a valid unencrypted PEM or DER key: {e}") from e


def _read_file(path: str, what: str) -> bytes:
    if not path:
        raise AuthenticationError(f"{what} path is empty")
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise AuthenticationError(f"cannot read {what} {path}: {e}") from e


def generate_client_certificate(cert_dir: Optional[str] = None, name: str = "uapoller",
                                application_uri: str = APPLICATION_URI) -> Tuple[str, str]:
    """Create a self-signed client certificate and key, returning their paths."""
    if cert_dir is None and application_uri in _generated_certificates:
        cert_path, key_path = _generated_certificates[application_uri]
        if os.path.exists(cert_path) and os.path.exists(key_path):
            return cert_path, key_path
    directory = cert_dir or tempfile.mkdtemp(prefix="uapoller-")
    os.makedirs(directory, exist_ok=True)
    cert_path = os.path.join(directory, f"client_cert_{name}.pem")
    key_path = os.path.join(directory, f"client_cert_{name}_key.pem")

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "uapoller"),
    ])
    hostname = socket.gethostname()
    san = x509.SubjectAlternativeName([
        x509.DNSName("localhost"),
        x509.DNSName(hostname),
        x509.UniformResourceIdentifier(application_uri),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=365))
        .add_extension(san, critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(digital_signature=True, content_commitment=True, key_encipherment=True,
                          data_encipherment=True, key_agreement=False, key_cert_sign=False,
                          crl_sign=False, encipher_only=False, decipher_only=False),
            critical=False,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False)
        .sign(key, hashes.SHA256())
    )
    with open(cert_path, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
    with open(key_path, "wb") as f:
        f.write(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption()
            )
        )
    if cert_dir is None:
        _generated_certificates[application_uri] = (cert_path, key_path)
    logging.info(f"_UASecurity_.generate_client_certificate: Generated self-signed client certificate in {directory}")
    return cert_path, key_path
