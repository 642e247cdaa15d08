import argparse
import json

from rich import print as rprint

from config import load_catalog_config, settings
from marketplace import storage
from marketplace.log import configure_logging
from marketplace.mercadopago import MercadoPagoClient
from marketplace.payments import webhook_health


def init_db(catalog_path: str | None) -> None:
    storage.init_db()
    data = load_catalog_config(catalog_path) if catalog_path else load_catalog_config()
    counts = storage.seed_catalog(data)
    rprint(f"[green]✓ Database ready at {settings.db_path}[/green]")
    for table, count in counts.items():
        rprint(f"  [cyan]{table}:[/cyan] {count} seeded")


def serve(host: str, port: int, reload: bool) -> None:
    import uvicorn

    storage.init_db()
    rprint(f"[bold magenta]Marketplace API[/bold magenta] on http://{host}:{port}")
    rprint(f"[cyan]Webhook URL:[/cyan] {settings.notification_url}")
    uvicorn.run("marketplace_service:app", host=host, port=port, reload=reload, log_config=None)


def show_config() -> None:
    rprint(json.dumps(webhook_health(MercadoPagoClient()), indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(description="Marketplace API with MercadoPago payments.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create tables and seed the catalog")
    init_parser.add_argument(
        "--catalog",
        default=None,
        help="Path to catalog YAML file (default: config/catalog.yaml)",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the API with uvicorn")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")

    subparsers.add_parser("config", help="Print the payment configuration report")

    args = parser.parse_args()
    configure_logging(settings.log_level)

    if args.command == "init-db":
        init_db(args.catalog)
    elif args.command == "serve":
        serve(args.host, args.port, args.reload)
    else:
        show_config()


if __name__ == "__main__":
    main()
