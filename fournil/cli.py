import click
from flask import current_app
from flask.cli import AppGroup
from .models import ProductsUnavailableError
from .offline_cache import get_offline_cache, fetch_and_cache_products, sync_waste_records, remote_available

products_cli = AppGroup('products', help='Product cache maintenance.')
waste_cli = AppGroup('waste', help='Waste record synchronisation.')


@products_cli.command('cache')
@click.option('--company', default=None, help='Company partition to refresh.')
@click.option('--agency', default=None, help='Agency whose stock is cached with the products.')
def cache_products_command(company, agency):
    """Refresh the offline product cache of a company."""
    company = company or current_app.config['DEFAULT_COMPANY']
    agency = agency or current_app.config['DEFAULT_AGENCY']
    try:
        products, from_cache = fetch_and_cache_products(get_offline_cache(), company, agency=agency)
    except ProductsUnavailableError as e:
        raise click.ClickException(f"No product available for {company}: {e}")

    source = 'cache' if from_cache else 'database'
    click.echo(f"{len(products)} product(s) available for {company} (from {source})")


@products_cli.command('clear-cache')
@click.option('--company', default=None, help='Company partition to clear.')
def clear_cache_command(company):
    company = company or current_app.config['DEFAULT_COMPANY']
    get_offline_cache().clear_product_cache(company)
    click.echo(f"Product cache cleared for {company}")


@waste_cli.command('sync')
def sync_command():
    """Push waste records saved while offline."""
    if not remote_available():
        raise click.ClickException("Database unreachable, nothing synchronised")

    result = sync_waste_records(get_offline_cache())
    click.echo(f"{result.synced} record(s) synchronised, {result.failed} failed")
    if result.failed:
        raise SystemExit(1)
