import sys

from ldap_tree_sync.main import main

sys.exit(main())
