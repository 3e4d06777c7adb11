"""shiftdeployのコマンドラインエントリポイント。"""

if __name__ == "__main__":
    from shiftdeploy.cli import main

    main()
