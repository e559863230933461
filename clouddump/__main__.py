from clouddump.cli import main

raise SystemExit(main())
