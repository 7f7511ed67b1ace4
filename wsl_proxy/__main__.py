import sys

from wsl_proxy.main import main

sys.exit(main())
