#!/usr/bin/env python3
"""
Tunnel Manager - Xray proxy client with system proxy routing and auto-failover
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from tunnel_manager.cli.interface import main

if __name__ == "__main__":
    main()
