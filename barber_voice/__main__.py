import sys

from barber_voice.cli import main

sys.exit(main())
