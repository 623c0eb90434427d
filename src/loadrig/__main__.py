import sys

from loadrig._cli import main

if __name__ == "__main__":
    sys.exit(main())
