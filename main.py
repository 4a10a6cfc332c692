#!/usr/bin/env python3
"""
Development launcher for scopecam.

- Forces DEV mode (debug logging) unless LOG_LEVEL is set
- Runs the appliance in the foreground
- Ctrl-C exits cleanly, stopping any active recording and the media server
"""

import os
import sys

from scopecam import appliance


if __name__ == "__main__":
    os.environ.setdefault("DEV", "1")
    sys.exit(appliance.main(sys.argv[1:]))
