from rarcheck.cli import main

raise SystemExit(main())
