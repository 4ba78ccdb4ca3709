"""gRPC channel credentials and options for reaching a store."""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple
import logging

import grpc

from obslytics.config import InputConfig, TLSConfig


@dataclass
class DialOptions:
    """Everything needed to open a channel: credentials (None for plaintext) and options."""
    credentials: Optional[grpc.ChannelCredentials] = None
    options: List[Tuple[str, Any]] = field(default_factory=list)

    def open_channel(self, endpoint: str) -> grpc.Channel:
        if self.credentials is None:
            return grpc.insecure_channel(endpoint, options=self.options)
        return grpc.secure_channel(endpoint, self.credentials, options=self.options)


def _read(path: str, what: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ValueError(f"Reading {what} from {path}: {e}") from e


def tls_credentials(tls: TLSConfig, logger: logging.Logger) -> grpc.ChannelCredentials:
    """Load CA bundle and optional client key pair into channel credentials."""
    if tls.insecure_skip_verify:
        raise ValueError(
            "insecure_skip_verify cannot be honoured by grpc; "
            "set insecure: true for a plaintext connection instead"
        )

    root_certificates = None
    if tls.ca_file:
        root_certificates = _read(tls.ca_file, "client CA")
        logger.info("TLS client using provided certificate pool")
    else:
        logger.info("TLS client using system certificate pool")

    if bool(tls.key_file) != bool(tls.cert_file):
        raise ValueError("Both client key and certificate must be provided")

    private_key = certificate_chain = None
    if tls.cert_file:
        certificate_chain = _read(tls.cert_file, "client certificate")
        private_key = _read(tls.key_file, "client key")
        logger.info("TLS client authentication enabled")

    return grpc.ssl_channel_credentials(
        root_certificates=root_certificates,
        private_key=private_key,
        certificate_chain=certificate_chain,
    )


def build_dial_options(config: InputConfig, logger: logging.Logger = None) -> DialOptions:
    """Create dial options for connecting to a StoreAPI endpoint."""
    logger = logger or logging.getLogger(__name__)

    # Series responses can be large; allow messages up to the configured limit.
    options: List[Tuple[str, Any]] = [
        ("grpc.max_receive_message_length", config.max_recv_message_bytes),
    ]

    if config.insecure:
        logger.info(f"Using plaintext connection to {config.endpoint}")
        return DialOptions(credentials=None, options=options)

    logger.info("Enabling client to server TLS")
    credentials = tls_credentials(config.tls_config, logger)
    if config.tls_config.server_name:
        options.append(("grpc.ssl_target_name_override", config.tls_config.server_name))
    return DialOptions(credentials=credentials, options=options)
