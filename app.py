"""
Module Orchestration Engine - Application Entry Point.

============================================================
USAGE
============================================================
python app.py --config engine.yaml --manifest modules.yaml
python app.py --manifest modules.yaml --show-order
python app.py --help

See orchestrator/cli.py for every option.

============================================================
"""

import sys

from orchestrator.cli import main


if __name__ == "__main__":
    sys.exit(main())
