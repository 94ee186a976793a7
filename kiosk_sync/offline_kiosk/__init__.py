"""Local kiosk server."""
