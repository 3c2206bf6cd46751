"""Point-of-sale cart building and atomic checkout.

A checkout moves through ``BUILDING_CART -> VALIDATING -> COMMITTED`` or ends
in ``REJECTED`` without touching the store. Validation re-reads every product
from the store while holding the store lock, so two carts built from the same
stale listing can never both sell the last units.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import CheckoutState, CollectionName, StockSyncStatus
from .core_logic import (
    BusinessRuleViolation,
    EmptyCartError,
    InsufficientStockError,
    MissingReferenceError,
)
from .scope import Caller

TRANSACTION_PREFIX = "TX"


@dataclass
class CartLine:
    product: data_manager.ProductRow
    quantity: int

    @property
    def subtotal(self) -> Decimal:
        return self.product.price * self.quantity


class Cart:
    """Lines scanned for a single customer, checked against displayed stock.

    The stock checks made while building the cart only reflect the product
    snapshot the cashier scanned; :func:`checkout` repeats them against the
    store.
    """

    def __init__(self) -> None:
        self.lines: List[CartLine] = []
        self.state = CheckoutState.BUILDING_CART

    def __len__(self) -> int:
        return len(self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def total(self) -> Decimal:
        return sum((line.subtotal for line in self.lines), Decimal("0"))

    def _line_for(self, product_id: str) -> Optional[CartLine]:
        for line in self.lines:
            if line.product.product_id == product_id:
                return line
        return None

    def add(self, product: data_manager.ProductRow, quantity: int = 1) -> CartLine:
        """Add ``quantity`` units of ``product``, merging with an existing line.

        Raises:
            InsufficientStockError: If the product is out of stock or the
                line would exceed the product's stock.
            ValueError: If ``quantity`` is not a positive whole number.
        """
        core_logic.require_positive_quantity(quantity)
        line = self._line_for(product.product_id)
        wanted = quantity + (line.quantity if line else 0)
        if wanted > product.stock:
            log.warning(
                "Refused to add %d x '%s' to cart: %d in stock",
                quantity,
                product.product_id,
                product.stock,
            )
            raise InsufficientStockError(product.product_id, wanted, product.stock)

        if line is None:
            line = CartLine(product=product, quantity=quantity)
            self.lines.append(line)
        else:
            line.product = product
            line.quantity = wanted
        return line

    def update_quantity(self, product_id: str, delta: int) -> Optional[CartLine]:
        """Change a line by ``delta`` units; a line reaching zero is removed."""
        line = self._line_for(product_id)
        if line is None:
            raise MissingReferenceError(f"Product '{product_id}' is not in the cart")
        wanted = line.quantity + delta
        if wanted <= 0:
            self.lines.remove(line)
            return None
        if wanted > line.product.stock:
            raise InsufficientStockError(product_id, wanted, line.product.stock)
        line.quantity = wanted
        return line

    def remove(self, product_id: str) -> None:
        self.lines = [line for line in self.lines if line.product.product_id != product_id]

    def clear(self) -> None:
        self.lines = []
        self.state = CheckoutState.BUILDING_CART


def identify_product(
    products: Iterable[data_manager.ProductRow],
    term: str,
    branch_id: Optional[str] = None,
) -> Optional[data_manager.ProductRow]:
    """Resolve a scanned or typed code to a product.

    Matching order: exact SKU, exact name, then name substring, all
    case-insensitive and restricted to ``branch_id`` when given.
    """
    needle = term.strip().lower()
    if not needle:
        return None
    candidates = [p for p in products if branch_id is None or p.branch_id == branch_id]

    for product in candidates:
        if product.sku.lower() == needle:
            return product
    for product in candidates:
        if product.name.lower() == needle:
            return product
    for product in candidates:
        if needle in product.name.lower():
            return product
    return None


def _merge_lines(lines: Iterable[CartLine]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for line in lines:
        core_logic.require_positive_quantity(line.quantity)
        product_id = line.product.product_id
        merged[product_id] = merged.get(product_id, 0) + line.quantity
    return merged


def validate_cart(
    store: data_manager.EntityStore,
    cart: Cart,
    branch_id: str,
) -> List[Tuple[data_manager.ProductRow, int]]:
    """Check every cart line against the products currently in the store.

    Returns:
        list[tuple[ProductRow, int]]: Fresh product records paired with the
            merged quantity requested for each.

    Raises:
        EmptyCartError: If the cart has no lines.
        MissingReferenceError: If a product no longer exists.
        BusinessRuleViolation: If a product is stocked at another branch.
        InsufficientStockError: If a quantity exceeds the stock on hand.
        ValueError: If a quantity is not a positive whole number.
    """
    if cart.is_empty:
        raise EmptyCartError("Cart is empty")

    current = {product.product_id: product for product in store.get(CollectionName.PRODUCTS)}
    validated = []
    for product_id, quantity in _merge_lines(cart.lines).items():
        product = current.get(product_id)
        if product is None:
            raise MissingReferenceError(f"Unknown product id: {product_id}")
        if product.branch_id != branch_id:
            raise BusinessRuleViolation(
                f"Product '{product_id}' is not stocked at branch '{branch_id}'"
            )
        if quantity > product.stock:
            raise InsufficientStockError(product_id, quantity, product.stock)
        validated.append((product, quantity))
    return validated


def build_transaction(
    lines: Sequence[Tuple[data_manager.ProductRow, int]],
    caller: Caller,
    *,
    timestamp: datetime,
) -> data_manager.TransactionRow:
    """Materialize validated lines into a transaction with snapshotted prices."""
    items = tuple(
        data_manager.LineItem(
            product_id=product.product_id,
            product_name=product.name,
            quantity=quantity,
            price=product.price,
        )
        for product, quantity in lines
    )
    return data_manager.TransactionRow(
        transaction_id=core_logic.generate_id(TRANSACTION_PREFIX, when=timestamp),
        timestamp_iso=timestamp.isoformat(),
        total=sum((item.price * item.quantity for item in items), Decimal("0")),
        branch_id=caller.branch_id,
        pharmacist_id=caller.user_id,
        items=items,
    )


def _decrement_stock(
    store: data_manager.EntityStore,
    transaction: data_manager.TransactionRow,
) -> List[str]:
    """Apply the sale to stock levels; return ids that could not be updated."""
    products = store.get(CollectionName.PRODUCTS)
    positions = {product.product_id: index for index, product in enumerate(products)}
    unsynced = []
    for item in transaction.items:
        index = positions.get(item.product_id)
        if index is None:
            log.error(
                "Product '%s' vanished before stock could be decremented for transaction '%s'",
                item.product_id,
                transaction.transaction_id,
            )
            unsynced.append(item.product_id)
            continue
        product = products[index]
        products[index] = replace(product, stock=product.stock - item.quantity)

    try:
        store.put(CollectionName.PRODUCTS, products)
    except (OSError, data_manager.StoreError) as exc:
        log.error(
            "Stock write failed for transaction '%s': %s",
            transaction.transaction_id,
            exc,
        )
        return [item.product_id for item in transaction.items]
    return unsynced


def _mark_stock_sync_failed(
    store: data_manager.EntityStore,
    transaction: data_manager.TransactionRow,
) -> data_manager.TransactionRow:
    flagged = replace(transaction, stock_sync=StockSyncStatus.STOCK_SYNC_FAILED)
    transactions = [
        flagged if existing.transaction_id == transaction.transaction_id else existing
        for existing in store.get(CollectionName.TRANSACTIONS)
    ]
    store.put(CollectionName.TRANSACTIONS, transactions)
    return flagged


def checkout(
    context: core_logic.RuntimeContext,
    cart: Cart,
    caller: Caller,
    *,
    now: Optional[datetime] = None,
) -> data_manager.TransactionRow:
    """Validate ``cart`` and commit it as a stock-decrementing transaction.

    Validation runs before any write; a rejected checkout leaves the store
    exactly as it was. Once validation passes the transaction is appended and
    stock is decremented for every line while the store lock is held. If the
    stock update cannot be applied the transaction is kept and flagged
    ``STOCK_SYNC_FAILED`` for reconciliation instead of being rolled back.

    Args:
        context (RuntimeContext): Runtime context carrying the store and the
            optional revenue ledger.
        cart (Cart): Lines to sell. Its ``state`` tracks the attempt.
        caller (Caller): The cashier; the sale is booked to their branch.
        now (datetime | None): Commit timestamp override, used by tests.

    Returns:
        TransactionRow: The stored transaction.

    Raises:
        EmptyCartError: If the cart is empty.
        InsufficientStockError: If any line exceeds current stock.
        MissingReferenceError: If a product no longer exists.
        BusinessRuleViolation: If the caller has no branch or a product
            belongs to another branch.
        ValueError: If a line quantity is invalid.
        StoreError: If the stored transactions could not be read, so the
            sale cannot be appended without losing them.
    """
    if cart.is_empty:
        cart.state = CheckoutState.REJECTED
        log.warning("Checkout rejected for caller '%s': cart is empty", caller.user_id)
        raise EmptyCartError("Cart is empty")

    if caller.branch_id is None:
        cart.state = CheckoutState.REJECTED
        log.warning("Checkout refused for caller '%s' without a branch", caller.user_id)
        raise BusinessRuleViolation("Checkout requires a caller assigned to a branch")

    store = context.store
    with store.lock:
        cart.state = CheckoutState.VALIDATING
        try:
            lines = validate_cart(store, cart, caller.branch_id)
        except (BusinessRuleViolation, ValueError) as exc:
            cart.state = CheckoutState.REJECTED
            log.warning("Checkout rejected for caller '%s': %s", caller.user_id, exc)
            raise

        transaction = build_transaction(lines, caller, timestamp=core_logic.resolve_timestamp(now))
        transactions = store.get(CollectionName.TRANSACTIONS)
        transactions.append(transaction)
        try:
            store.put(CollectionName.TRANSACTIONS, transactions)
        except data_manager.StoreError:
            cart.state = CheckoutState.REJECTED
            raise

        if _decrement_stock(store, transaction):
            transaction = _mark_stock_sync_failed(store, transaction)

    if context.ledger is not None:
        context.ledger.record(transaction)

    cart.state = CheckoutState.COMMITTED
    log.info(
        "Committed transaction '%s' at branch '%s' (%d lines, total=%s, stock_sync=%s)",
        transaction.transaction_id,
        transaction.branch_id,
        len(transaction.items),
        transaction.total,
        transaction.stock_sync.value,
    )
    return transaction
