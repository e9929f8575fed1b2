#!/usr/bin/env python3
from archgen.runner import main

if __name__ == "__main__":
    raise SystemExit(main())
