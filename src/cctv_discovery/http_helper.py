# HTTP Helper for ONVIF device connections
# Cameras ship self-signed certificates and are addressed by bare IP, so the
# ONVIF client gets its own trust-all TLS context. The default context is never touched.

import aiohttp
import ssl
import logging

logger = logging.getLogger(__name__)


def create_trust_all_ssl_context() -> ssl.SSLContext:
    """TLS context that accepts any certificate and skips hostname checks"""
    ssl_context = ssl.create_default_context()
    ssl_context.check_hostname = False
    ssl_context.verify_mode = ssl.CERT_NONE
    return ssl_context


def create_onvif_session(
    ssl_context: ssl.SSLContext,
    connect_timeout: float = 5,
    request_timeout: float = 10
) -> aiohttp.ClientSession:
    """
    Create aiohttp session for one device exchange (SOAP over HTTP or HTTPS)
    The given SSL context only applies to this session's connector
    """
    connector = aiohttp.TCPConnector(
        ssl=ssl_context,
        limit_per_host=2,           # Cameras handle few parallel connections
        force_close=True,           # No keep-alive between one-shot SOAP calls
        enable_cleanup_closed=True
    )

    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=request_timeout, sock_connect=connect_timeout)
    )
