"""SBA HUBZone designation feed."""
