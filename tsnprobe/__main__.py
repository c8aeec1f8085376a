from .tsnprobe import main

main(prog_name="tsnprobe")
