"""
Catalog Initialization Module.

Loads product records from a JSON file, validates them and stores them in the
SQLite catalog used by the order assistant.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from chat_commerce.config import DATABASE_PATH, PRODUCTS_PATH
from chat_commerce.database import DatabaseManager
from chat_commerce.models import Product

logger = logging.getLogger(__name__)


def load_products_from_file(file_path: Optional[str] = None) -> List[Product]:
    """
    Load products from JSON file.

    Invalid entries are skipped with a warning.

    Args:
        file_path: Path to products JSON file

    Returns:
        List of validated Product objects
    """
    path = Path(file_path or PRODUCTS_PATH)

    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    products = []
    for item in data.get('products', []):
        try:
            products.append(Product(**item))
        except PydanticValidationError as e:
            logger.warning("Skipping invalid product %s: %s", item.get('id', 'unknown'), e)

    return products


def initialize_catalog(
    products_path: Optional[str] = None,
    database_path: Optional[str] = None,
    force_reinitialize: bool = False
) -> DatabaseManager:
    """
    Initialize the catalog with products from file.

    Args:
        products_path: Path to products JSON file
        database_path: Path of the SQLite database
        force_reinitialize: If True, overwrite products even if the catalog is populated

    Returns:
        DatabaseManager for the initialized database
    """
    database = DatabaseManager(database_path)

    current_count = database.get_product_count()
    if current_count > 0 and not force_reinitialize:
        logger.info(
            "Catalog already contains %d products. Use force_reinitialize=True to reload.",
            current_count,
        )
        return database

    products = load_products_from_file(products_path)
    logger.info("Loaded %d products from file", len(products))

    written = database.upsert_products(products)
    logger.info("Stored %d products in %s", written, database.db_path)
    return database


if __name__ == "__main__":
    import argparse

    from chat_commerce.config import configure_logging
    from chat_commerce.matcher import match_products

    parser = argparse.ArgumentParser(description="Initialize product catalog")
    parser.add_argument(
        "--products",
        type=str,
        default=PRODUCTS_PATH,
        help="Path to products JSON file"
    )
    parser.add_argument(
        "--database",
        type=str,
        default=DATABASE_PATH,
        help="Path of the SQLite database"
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Reload products even if the catalog is populated"
    )
    parser.add_argument(
        "--test-match",
        type=str,
        help="Run the product matcher on this text after initialization"
    )

    args = parser.parse_args()
    configure_logging()

    print("=" * 50)
    print("Initializing Product Catalog")
    print("=" * 50)

    db = initialize_catalog(
        products_path=args.products,
        database_path=args.database,
        force_reinitialize=args.force
    )

    print(f"\nCatalog initialized with {db.get_product_count()} products")

    if args.test_match:
        print(f"\nMatching products in: '{args.test_match}'")
        candidates = match_products(args.test_match, db.list_products())
        if not candidates:
            print("No products mentioned.")
        for i, candidate in enumerate(candidates, 1):
            print(f"\n--- Match {i} ---")
            print(f"Product: {candidate.product.name}")
            print(f"Quantity: {candidate.quantity}")
            print(f"Price: R$ {candidate.product.price:.2f}")
            print(f"Confidence: {candidate.confidence:.3f}")
