from sheet_mapper.cli import main

raise SystemExit(main())
