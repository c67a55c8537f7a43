"""Pytest configuration for chess-relay-client tests.

The client modules live as flat files in deploy/linux/; put that directory
on sys.path so tests can `import relay_client` and friends directly.
"""

import os
import sys

# Ensure deploy/linux dir is on sys.path so `import relay_client` works
CLIENT_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "deploy", "linux")
if CLIENT_DIR not in sys.path:
    sys.path.insert(0, CLIENT_DIR)
