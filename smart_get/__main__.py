import sys

from smart_get.main import main

sys.exit(main())
