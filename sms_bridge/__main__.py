import sys

from sms_bridge.cli import main

sys.exit(main())
