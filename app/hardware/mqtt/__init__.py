"""paho-mqtt client helpers."""
