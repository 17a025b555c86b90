"""
Unified CLI for furnace
Manages recipes and runs their local PHP environments
"""

import argparse


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="furnace - Local PHP development environments",
        prog="furnace"
    )
    parser.add_argument("--home", help="furnace home directory (default: ~/.furnace or $FURNACE_HOME)")
    parser.add_argument("--config", help="Config file (default: <home>/config.yml)")
    parser.add_argument("--log-level", default="INFO", help="Console log level (default: INFO)")

    subparsers = parser.add_subparsers(dest="module", help="Command to run")

    # Recipe management
    recipe_parser = subparsers.add_parser("recipe", help="Recipe operations")
    recipe_subparsers = recipe_parser.add_subparsers(dest="command", help="Recipe commands")

    recipe_subparsers.add_parser("list", help="List stored recipes")

    info_parser = recipe_subparsers.add_parser("info", help="Show a recipe")
    info_parser.add_argument("--name", required=True, help="Recipe name")

    create_parser = recipe_subparsers.add_parser("create", help="Create a recipe")
    create_parser.add_argument("--name", required=True, help="Recipe name")
    create_parser.add_argument("--path", required=True, help="Project directory")
    create_parser.add_argument("--php", required=True, help="PHP version, e.g. 8.2")
    create_parser.add_argument("--engine", choices=["nginx", "apache"], help="Serving engine")
    create_parser.add_argument("--site", help="Site hostname (default: <name>.<tld>)")

    delete_parser = recipe_subparsers.add_parser("delete", help="Delete a recipe")
    delete_parser.add_argument("--name", required=True, help="Recipe name")

    # Project helpers
    cook_parser = subparsers.add_parser("cook", help="Create a recipe from a project directory")
    cook_parser.add_argument("--path", help="Project directory (default: current directory)")
    cook_parser.add_argument("--name", help="Recipe name (default: directory name)")
    cook_parser.add_argument("--engine", choices=["nginx", "apache"], help="Serving engine")
    cook_parser.add_argument("--php", help="PHP version (default: from .furnace.yml or composer.json)")

    dispose_parser = subparsers.add_parser("dispose", help="Delete a recipe and its project link")
    dispose_parser.add_argument("--name", help="Recipe name (default: recipe linked from current directory)")

    # Environments
    up_parser = subparsers.add_parser("up", help="Start environments and supervise them until Ctrl-C")
    up_parser.add_argument("names", nargs="+", help="Recipe names")

    status_parser = subparsers.add_parser("status", help="Show environment status")
    status_parser.add_argument("--name", help="Recipe name (default: all)")

    subparsers.add_parser("engines", help="Show which serving engines and PHP versions are installed")
    subparsers.add_parser("serve", help="Serve JSON-lines requests on stdin/stdout")

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if not args.module:
        parser.print_help()
        print("\n Available commands: recipe, cook, dispose, up, status, engines, serve")
        return

    if args.module == "recipe" and not args.command:
        parser.parse_args(["recipe", "--help"])

    from furnace.__main__ import handle_furnace_commands
    handle_furnace_commands(args)


if __name__ == "__main__":
    main()
