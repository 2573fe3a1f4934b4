import sys

from awstools.cli import main

if __name__ == "__main__":
    sys.exit(main())
