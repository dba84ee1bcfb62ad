from matrix_puppet.cli import run

if __name__ == "__main__":
    run()
