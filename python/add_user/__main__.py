from add_user.cli import main

raise SystemExit(main())
