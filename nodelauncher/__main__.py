from nodelauncher.main import main

main()
