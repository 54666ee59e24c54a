"""CaptureHub HTTP control API."""
