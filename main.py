"""
PackSync - Modrinth modpack install and update engine
Installs .mrpack modpacks onto Minecraft servers and keeps them updated
"""

from packsync.cli import app


def main():
    """Application entry point"""
    app()


if __name__ == "__main__":
    main()
