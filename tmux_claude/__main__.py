from tmux_claude.cli import main


if __name__ == "__main__":
    main()
