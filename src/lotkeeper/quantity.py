"""Product quantity derivation from lot sets."""

from .models import Product


def lot_total(product: Product) -> float:
    """Sum of the product's lot quantities (0 for an empty lot set)."""
    return sum(lot.quantity for lot in product.lots)


def derive_quantity(product: Product) -> float:
    """Return the quantity a product should display.

    Products with lots report the sum of their lot quantities; products
    without lots report their stored scalar. Lot quantities are validated
    when lots are mutated, not filtered here.
    """
    if product.lots:
        return lot_total(product)
    return product.quantity


def sync_quantity(product: Product) -> float:
    """Write the derived quantity back onto the product and return it."""
    product.quantity = derive_quantity(product)
    return product.quantity
