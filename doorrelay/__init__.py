"""Door Relay Server - relays door-open commands to ESP32 door controllers"""

__version__ = "1.0.0"
