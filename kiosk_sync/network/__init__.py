"""
Network module for the kiosk.

Connected-client registry and the local WebSocket bridge to the kiosk page.
"""

from .clients import Client, ClientRegistry

__all__ = ['Client', 'ClientRegistry']
