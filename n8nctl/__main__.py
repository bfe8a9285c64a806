from n8nctl.cli import main

if __name__ == "__main__":
    main()
