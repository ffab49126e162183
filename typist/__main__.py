from typist.main import main

main()
