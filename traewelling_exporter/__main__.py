import sys

from traewelling_exporter.poller.cli import main

sys.exit(main())
