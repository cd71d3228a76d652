"""Simulation Config Editor 入口点。

支持: python -m sim_config_editor
"""

from .app import main

if __name__ == "__main__":
    main()
