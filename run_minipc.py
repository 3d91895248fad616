# Made by trex099
# https://github.com/Trex099/Glint
"""
Launcher for running minipc straight from a checkout: `sudo python3 run_minipc.py`.
"""
import os
import sys

if __name__ == "__main__":
    sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), 'src'))

    from minipc.cli import main

    sys.exit(main())
