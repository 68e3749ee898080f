import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from cryptography import x509


@dataclass(frozen=True)
class CertificateNames:
    subject: str
    issuer: str


def peer_certificate_names(response: httpx.Response) -> Optional[CertificateNames]:
    """
    Gets subject and issuer of the certificate the server presented on the
    connection carrying ``response``.

    The chain is never validated: the DER bytes are read straight from the
    TLS session and parsed, so self-signed and expired certificates are
    reported like any other.

    Args:
        response: A response still attached to its connection (i.e. read
            inside ``client.stream(...)``)

    Returns:
        RFC 4514 subject and issuer, or None for plain HTTP or if unavailable
    """
    logger = logging.getLogger(__name__)
    stream = response.extensions.get("network_stream")
    if stream is None:
        logger.debug(f"No network stream exposed for {response.url}")
        return None

    ssl_object = stream.get_extra_info("ssl_object")
    if ssl_object is None:
        return None

    der = ssl_object.getpeercert(binary_form=True)
    if not der:
        logger.debug(f"No peer certificate for {response.url}")
        return None

    try:
        cert = x509.load_der_x509_certificate(der)
        names = CertificateNames(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
        )
    except ValueError as e:
        logger.debug(f"Unparseable certificate for {response.url}: {e}")
        return None

    logger.debug(f"TLS certificate for {response.url.host} (issuer: {names.issuer})")
    return names
