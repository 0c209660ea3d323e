from nolatransit.cli import main

raise SystemExit(main())
