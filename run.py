from pulseprint.main import main

if __name__ == "__main__":
    # Launcher for running from a checkout without installing the console script
    raise SystemExit(main())
