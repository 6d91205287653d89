from projectroom_sync.main import main

main()
