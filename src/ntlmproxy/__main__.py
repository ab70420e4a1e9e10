import sys

from ntlmproxy.cli import main

sys.exit(main())
