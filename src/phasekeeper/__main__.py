"""
Phasekeeper package entry point.

Allows running phasekeeper as a module:
    python -m phasekeeper
"""

from phasekeeper.cli import main

if __name__ == "__main__":
    main()
