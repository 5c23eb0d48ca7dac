from rool_sync.cli import main

main()
