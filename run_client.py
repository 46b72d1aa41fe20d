# MIT License © 2025 Motohiro Suzuki
"""
keyB download entry point

  python3 run_client.py --session transfer-42 --chunks 64 --out keyB.bin
"""

from __future__ import annotations

from api.key_client_async import main


if __name__ == "__main__":
    main()
