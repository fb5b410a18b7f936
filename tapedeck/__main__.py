import sys

from tapedeck.main import main

if __name__ == '__main__':
    sys.exit(main())
