from vmmanager.cli import main

raise SystemExit(main())
