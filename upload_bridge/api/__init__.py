"""
API Module - HTTP Front Door
"""

from .client_ip import ClientIdentity, ClientIpSource, resolve_client_identity
from .rest import create_app

__all__ = ['ClientIdentity', 'ClientIpSource', 'create_app', 'resolve_client_identity']
