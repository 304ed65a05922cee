from joinsim.cli import main

main()
