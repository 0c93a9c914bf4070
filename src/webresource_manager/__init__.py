"""Dataverse web resource manager: sessions, resource trees and local sync state."""

__version__ = "0.1.0"
