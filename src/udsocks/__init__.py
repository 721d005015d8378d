"""
udsocks: SOCKS5 proxy for Unix-domain services

Accepts SOCKS5 CONNECT requests on Unix-domain or TCP sockets and relays
each one to the Unix-domain socket published as ``DIRECTORY/host_port``.
"""

__version__ = "0.1.0"

from udsocks.config import ProxyConfig, ProxySettings
from udsocks.endpoints import InheritedEndpoint, TcpEndpoint, UnixEndpoint
from udsocks.session import HandshakeState, SocksSession
from udsocks.socks_proxy import SocksProxyServer

__all__ = [
    "__version__",
    "SocksProxyServer",
    "SocksSession",
    "HandshakeState",
    "ProxyConfig",
    "ProxySettings",
    "UnixEndpoint",
    "TcpEndpoint",
    "InheritedEndpoint",
]
