# MIT License © 2025 Motohiro Suzuki
"""
Key service entry point

  python3 run_server.py --host 0.0.0.0 --port 8787
"""

from __future__ import annotations

from api.key_server import main


if __name__ == "__main__":
    main()
