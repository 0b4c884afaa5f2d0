"""
MQTT OSC Bridge - Entry point

Run with: python -m mqtt_osc_bridge
"""

import sys

from .app import main

if __name__ == "__main__":
    sys.exit(main())
