from tiledecoder.cli import main

main()
