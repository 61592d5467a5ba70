#!/usr/bin/env python3

import sys
import time
import logging
import atem_control_protocol as atem

logging.basicConfig(level=logging.INFO)

host = sys.argv[1] if len(sys.argv) > 1 else '192.168.10.240'

# AtemSession needs no event loop; the caller drives it by calling run_loop() frequently.
with atem.AtemSession(host) as session:
    if not session.connect():
        sys.exit(f"Unable to connect to {host}")
    session.change_preview_input(2)
    session.cut()
    # Keep the session serviced long enough for the switcher to acknowledge and report the new state
    end_time = time.monotonic() + 1.0
    while time.monotonic() < end_time:
        session.run_loop()
        time.sleep(0.01)
    print(session.state)
