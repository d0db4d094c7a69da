from health_portal.client.portal_client import PortalClient
from health_portal.client.toggle import RelevanceGuard, SharingToggle, ToggleState

__all__ = ["PortalClient", "RelevanceGuard", "SharingToggle", "ToggleState"]
