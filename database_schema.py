#!/usr/bin/env python3
"""
Stock-Out Database Schema
Local SQLite store for orders and warehouse stock movements

Tables:
- orders: Customer orders (one row per order number)
- order_items: Design/lot lines with ordered and fulfilled quantities
- scanned_items: Flat scan log written once per submitted session
- stock_movements: One row per design/lot moved out, with session JSON
"""

import sqlite3
import logging
import os
import json
import uuid
from pathlib import Path
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

from scan_validation import DemandLine, OrderDemandSnapshot, ScanEvent
from scan_aggregation import aggregate, aggregated_to_dicts

# Database path
# Default: <repo>/data/stock.db
# Production installs should set WALLPAPER_STOCK_DATA_DIR to a stable
# location outside the working tree, e.g. /var/lib/wallpaper-stock
_REPO_DATA_DIR = Path(__file__).parent / "data"
_DATA_DIR_ENV = (os.environ.get('WALLPAPER_STOCK_DATA_DIR') or '').strip()
DATA_DIR = (Path(_DATA_DIR_ENV).expanduser() if _DATA_DIR_ENV else _REPO_DATA_DIR)
DB_PATH = DATA_DIR / "stock.db"

ORDER_STATUSES = ('PENDING', 'COMPLETED', 'CANCELLED')
ITEM_STATUSES = ('PENDING', 'PARTIALLY_FULFILLED', 'FULFILLED')
MOVEMENT_TYPES = ('OUT', 'IN', 'ADJUSTMENT', 'CUSTOM')
MOVEMENT_STATUSES = ('COMPLETED', 'CANCELLED')


def get_db_connection():
    """Get database connection with row factory"""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def init_database():
    """Initialize all database tables"""
    conn = get_db_connection()
    cursor = conn.cursor()

    # ============================================
    # ORDERS
    # ============================================

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS orders (
            id TEXT PRIMARY KEY,
            order_number INTEGER NOT NULL UNIQUE,
            customer_name TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'PENDING',
            order_json TEXT,
            created_by TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
            updated_at DATETIME,
            completed_at DATETIME
        )
    ''')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS order_items (
            id TEXT PRIMARY KEY,
            order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
            design TEXT NOT NULL,
            lot_number TEXT NOT NULL,
            quantity INTEGER NOT NULL,
            fulfilled_quantity INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'PENDING',
            updated_at DATETIME
        )
    ''')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)')

    # ============================================
    # STOCK OUT
    # ============================================

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS scanned_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            user_id TEXT,
            order_id TEXT,
            design TEXT NOT NULL,
            lot_number TEXT NOT NULL,
            unique_identifier TEXT NOT NULL,
            is_processed INTEGER NOT NULL DEFAULT 0,
            scanned_at DATETIME
        )
    ''')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_scanned_items_session ON scanned_items(session_id, is_processed)')

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS stock_movements (
            id TEXT PRIMARY KEY,
            order_id TEXT,
            invoice_number TEXT NOT NULL,
            design TEXT NOT NULL,
            lot_number TEXT NOT NULL,
            quantity INTEGER NOT NULL,
            unique_identifiers TEXT,
            image_url TEXT,
            movement_type TEXT NOT NULL DEFAULT 'OUT',
            status TEXT NOT NULL DEFAULT 'COMPLETED',
            session_json TEXT,
            created_by TEXT,
            created_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
    ''')
    cursor.execute('CREATE INDEX IF NOT EXISTS idx_stock_movements_order ON stock_movements(order_id, status)')

    conn.commit()
    conn.close()
    logging.info("Stock database ready at %s", DB_PATH)


def _now() -> str:
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def _millis_to_timestamp(value) -> Optional[str]:
    if value in (None, ''):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000.0).isoformat(timespec='milliseconds')
    except (TypeError, ValueError, OverflowError, OSError):
        return str(value)


def _movement_row(row: sqlite3.Row) -> Dict[str, Any]:
    out = dict(row)
    out['unique_identifiers'] = json.loads(out['unique_identifiers'] or '[]')
    out['session_json'] = json.loads(out['session_json']) if out.get('session_json') else None
    return out


# ============================================================
# Orders
# ============================================================

def get_next_order_number() -> int:
    """Next free order number (1 for the first order)."""
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('SELECT MAX(order_number) AS n FROM orders')
    row = cursor.fetchone()
    conn.close()
    return int(row['n']) + 1 if row and row['n'] is not None else 1


def validate_order_details(customer_name: str, order_details: Any) -> List[Dict[str, Any]]:
    """Check and normalize order lines given as ``{Design, Qty, Lot}`` dicts."""
    if not customer_name or not str(customer_name).strip():
        raise ValueError("Customer name is required")
    if not order_details or not isinstance(order_details, list):
        raise ValueError("At least one order item is required")

    lines = []
    for item in order_details:
        if not isinstance(item, dict):
            raise ValueError("Order items must be objects")
        design = str(item.get('Design') or '').strip()
        lot = str(item.get('Lot') or '').strip()
        if not design:
            raise ValueError("Design is required for all items")
        try:
            qty = int(item.get('Qty') or 0)
        except (TypeError, ValueError):
            qty = 0
        if qty <= 0:
            raise ValueError("Quantity must be greater than 0")
        if not lot:
            raise ValueError("Lot number is required for all items")
        lines.append({'Design': design, 'Qty': qty, 'Lot': lot})
    return lines


def create_order(customer_name: str, order_details: list, user_id: str = None) -> Dict[str, Any]:
    """Create an order with its line items in one transaction."""
    lines = validate_order_details(customer_name, order_details)
    customer_name = str(customer_name).strip()

    conn = get_db_connection()
    cursor = conn.cursor()
    try:
        cursor.execute('SELECT MAX(order_number) AS n FROM orders')
        row = cursor.fetchone()
        order_number = int(row['n']) + 1 if row['n'] is not None else 1
        order_id = str(uuid.uuid4())
        order_json = {
            'express': order_number,
            'customerName': customer_name,
            'orderDetails': lines,
        }
        cursor.execute('''
            INSERT INTO orders (id, order_number, customer_name, status, order_json, created_by, created_at)
            VALUES (?, ?, ?, 'PENDING', ?, ?, ?)
        ''', (order_id, order_number, customer_name, json.dumps(order_json), user_id, _now()))

        for line in lines:
            cursor.execute('''
                INSERT INTO order_items (id, order_id, design, lot_number, quantity, fulfilled_quantity, status)
                VALUES (?, ?, ?, ?, ?, 0, 'PENDING')
            ''', (str(uuid.uuid4()), order_id, line['Design'], line['Lot'], line['Qty']))
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logging.error("Error creating order: %s", e)
        raise RuntimeError("Failed to create order") from e
    finally:
        conn.close()

    logging.info("Order #%s created for %s (%s lines)", order_number, customer_name, len(lines))
    return get_order_by_id(order_id)


def _attach_items(conn, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    cursor = conn.cursor()
    for order in orders:
        cursor.execute(
            'SELECT * FROM order_items WHERE order_id = ? ORDER BY rowid',
            (order['id'],),
        )
        order['order_items'] = [dict(r) for r in cursor.fetchall()]
        order['order_json'] = json.loads(order['order_json']) if order.get('order_json') else None
    return orders


def get_orders(status: str = None, customer_name: str = None, limit: int = None, offset: int = None) -> List[Dict[str, Any]]:
    """Orders newest first, with their items."""
    where = []
    params: List[Any] = []
    if status:
        where.append('status = ?')
        params.append(status)
    if customer_name:
        where.append('customer_name LIKE ?')
        params.append(f'%{customer_name}%')

    sql = 'SELECT * FROM orders'
    if where:
        sql += ' WHERE ' + ' AND '.join(where)
    sql += ' ORDER BY created_at DESC, order_number DESC'
    if limit or offset:
        sql += ' LIMIT ? OFFSET ?'
        params.extend([int(limit) if limit else 10, int(offset or 0)])

    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute(sql, params)
    orders = [dict(r) for r in cursor.fetchall()]
    _attach_items(conn, orders)
    conn.close()
    return orders


def _get_order(column: str, value) -> Optional[Dict[str, Any]]:
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute(f'SELECT * FROM orders WHERE {column} = ?', (value,))
    row = cursor.fetchone()
    if not row:
        conn.close()
        return None
    order = _attach_items(conn, [dict(row)])[0]
    conn.close()
    return order


def get_order_by_id(order_id: str) -> Optional[Dict[str, Any]]:
    return _get_order('id', order_id)


def get_order_by_number(order_number: int) -> Optional[Dict[str, Any]]:
    return _get_order('order_number', int(order_number))


def update_order_status(order_id: str, status: str) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise ValueError(f"Invalid order status: {status}")
    now = _now()
    conn = get_db_connection()
    cursor = conn.cursor()
    if status == 'COMPLETED':
        cursor.execute(
            'UPDATE orders SET status = ?, updated_at = ?, completed_at = ? WHERE id = ?',
            (status, now, now, order_id),
        )
    else:
        cursor.execute('UPDATE orders SET status = ?, updated_at = ? WHERE id = ?', (status, now, order_id))
    updated = cursor.rowcount
    conn.commit()
    conn.close()
    if not updated:
        raise LookupError(f"Order not found: {order_id}")
    return get_order_by_id(order_id)


def cancel_order(order_id: str) -> Dict[str, Any]:
    """Orders are never deleted, only marked CANCELLED."""
    return update_order_status(order_id, 'CANCELLED')


def update_order_item_status(cursor, item_id: str, status: str, fulfilled_quantity: int) -> None:
    cursor.execute(
        'UPDATE order_items SET status = ?, fulfilled_quantity = ?, updated_at = ? WHERE id = ?',
        (status, fulfilled_quantity, _now(), item_id),
    )


def get_demand_snapshot(order_id: str) -> Optional[OrderDemandSnapshot]:
    """Freeze an order's remaining demand for a scan session."""
    order = get_order_by_id(order_id)
    if not order:
        return None
    return snapshot_from_order(order)


def snapshot_from_order(order: Dict[str, Any]) -> OrderDemandSnapshot:
    lines = tuple(
        DemandLine(
            design=str(item['design']),
            lot=str(item['lot_number']),
            ordered_quantity=int(item['quantity']),
            fulfilled_quantity=int(item.get('fulfilled_quantity') or 0),
        )
        for item in order.get('order_items') or []
    )
    return OrderDemandSnapshot(
        lines=lines,
        order_id=order.get('id'),
        order_number=order.get('order_number'),
        customer_name=order.get('customer_name') or '',
    )


# ============================================================
# Scan sessions
# ============================================================

def _event_from_dict(item: Any) -> ScanEvent:
    if isinstance(item, ScanEvent):
        return item
    if not isinstance(item, dict):
        raise ValueError("Scanned items must be objects")
    design = str(item.get('design') or '').strip()
    lot = str(item.get('lot') or item.get('lot_number') or '').strip()
    unique_id = str(item.get('uniqueIdentifier') or item.get('unique_identifier') or '').strip()
    if not design or not lot or not unique_id:
        raise ValueError("Scanned items need design, lot and uniqueIdentifier")
    scanned_at = item.get('scannedAt', item.get('scanned_at'))
    try:
        scanned_at = int(scanned_at)
    except (TypeError, ValueError):
        scanned_at = int(datetime.now().timestamp() * 1000)
    return ScanEvent(design=design, lot=lot, unique_identifier=unique_id, scanned_at=scanned_at)


def save_scanned_batch(session_id: str, user_id: str, order_id: Optional[str], items: Iterable[Any]) -> int:
    """Write a session's validated scan log in one go.

    Unprocessed rows already stored for the same session and user are replaced,
    so a retried submission does not double the log.
    """
    if not session_id:
        raise ValueError("Session ID is required")
    events = [_event_from_dict(i) for i in (items or [])]
    if not events:
        raise ValueError("Scanned items are required")

    conn = get_db_connection()
    cursor = conn.cursor()
    try:
        cursor.execute(
            "DELETE FROM scanned_items WHERE session_id = ? AND COALESCE(user_id, '') = ? AND is_processed = 0",
            (session_id, user_id or ''),
        )
        cursor.executemany('''
            INSERT INTO scanned_items (session_id, user_id, order_id, design, lot_number, unique_identifier, is_processed, scanned_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?)
        ''', [
            (session_id, user_id, order_id or None, e.design, e.lot, e.unique_identifier, _millis_to_timestamp(e.scanned_at))
            for e in events
        ])
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logging.error("Error batch inserting scanned items: %s", e)
        raise RuntimeError("Failed to save scanned items") from e
    finally:
        conn.close()

    logging.info("Saved %s scanned items for session %s", len(events), session_id)
    return len(events)


def _unprocessed_rows(cursor, session_id: str) -> List[Dict[str, Any]]:
    cursor.execute(
        'SELECT * FROM scanned_items WHERE session_id = ? AND is_processed = 0 ORDER BY id',
        (session_id,),
    )
    return [dict(r) for r in cursor.fetchall()]


def _rows_to_events(rows: List[Dict[str, Any]]) -> List[ScanEvent]:
    return [
        ScanEvent(design=r['design'], lot=r['lot_number'], unique_identifier=r['unique_identifier'], scanned_at=0)
        for r in rows
    ]


def get_scanned_items(session_id: str) -> List[Dict[str, Any]]:
    """Unprocessed items of a session, aggregated by design + lot."""
    conn = get_db_connection()
    rows = _unprocessed_rows(conn.cursor(), session_id)
    conn.close()
    return aggregated_to_dicts(aggregate(_rows_to_events(rows)))


def clear_scan_session(session_id: str) -> int:
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute('DELETE FROM scanned_items WHERE session_id = ? AND is_processed = 0', (session_id,))
    removed = cursor.rowcount
    conn.commit()
    conn.close()
    return removed


# ============================================================
# Stock movements
# ============================================================

def _require_open_order(cursor, order_id: str) -> None:
    cursor.execute('SELECT status FROM orders WHERE id = ?', (order_id,))
    row = cursor.fetchone()
    if not row:
        raise LookupError(f"Order not found: {order_id}")
    if row['status'] != 'PENDING':
        raise ValueError(f"Order is {row['status'].lower()}")


def _check_submission(cursor, session_id: str, order_id: Optional[str]) -> List[Dict[str, Any]]:
    if order_id:
        _require_open_order(cursor, order_id)
    rows = _unprocessed_rows(cursor, session_id)
    if not rows:
        raise ValueError("No items scanned")
    return rows


def check_submission(session_id: str, order_id: Optional[str] = None) -> int:
    """Raise unless the session can be turned into stock movements.

    LookupError for an unknown order, ValueError for an order that is no longer
    PENDING or a session without unprocessed items. Returns the item count.
    """
    conn = get_db_connection()
    try:
        return len(_check_submission(conn.cursor(), session_id, order_id))
    finally:
        conn.close()


def require_open_order(order_id: str) -> Dict[str, Any]:
    """Return the order if it can still be picked, else raise LookupError/ValueError."""
    conn = get_db_connection()
    try:
        _require_open_order(conn.cursor(), order_id)
    finally:
        conn.close()
    return get_order_by_id(order_id)

def create_stock_movement(
    session_id: str,
    user_id: str,
    order_id: Optional[str],
    invoice_number: str,
    image_url: Optional[str] = None,
    movement_type: str = 'OUT',
) -> List[Dict[str, Any]]:
    """Turn a saved scan session into stock movements and update the order."""
    if not invoice_number or not str(invoice_number).strip():
        raise ValueError("Invoice number is required")
    if movement_type not in MOVEMENT_TYPES:
        raise ValueError(f"Invalid movement type: {movement_type}")

    conn = get_db_connection()
    cursor = conn.cursor()
    try:
        rows = _check_submission(cursor, session_id, order_id)
        lines = aggregate(_rows_to_events(rows))

        session_json = json.dumps({
            'sessionId': session_id,
            'scannedAt': datetime.now().isoformat(),
            'items': rows,
        })
        created_at = _now()
        ids = []
        for line in lines:
            movement_id = str(uuid.uuid4())
            ids.append(movement_id)
            cursor.execute('''
                INSERT INTO stock_movements (
                    id, order_id, invoice_number, design, lot_number, quantity, unique_identifiers,
                    image_url, movement_type, status, session_json, created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'COMPLETED', ?, ?, ?)
            ''', (
                movement_id, order_id or None, str(invoice_number).strip(), line.design, line.lot, line.count,
                json.dumps(line.unique_identifiers), image_url, movement_type, session_json, user_id, created_at,
            ))

        cursor.execute(
            'UPDATE scanned_items SET is_processed = 1 WHERE session_id = ? AND is_processed = 0',
            (session_id,),
        )
        if order_id:
            _update_order_after_stock(cursor, order_id)
        conn.commit()

        placeholders = ','.join('?' for _ in ids)
        cursor.execute(f'SELECT * FROM stock_movements WHERE id IN ({placeholders}) ORDER BY rowid', ids)
        movements = [_movement_row(r) for r in cursor.fetchall()]
    except sqlite3.Error as e:
        conn.rollback()
        logging.error("Error creating stock movements: %s", e)
        raise RuntimeError("Failed to create stock movements") from e
    finally:
        conn.close()

    logging.info(
        "Stock movement %s: invoice=%s order=%s lines=%s items=%s",
        movement_type, invoice_number, order_id or 'custom', len(movements), sum(m['quantity'] for m in movements),
    )
    return movements


def _update_order_after_stock(cursor, order_id: str) -> None:
    """Recompute each item's fulfilled quantity from completed movements."""
    cursor.execute('SELECT * FROM order_items WHERE order_id = ?', (order_id,))
    items = [dict(r) for r in cursor.fetchall()]
    if not items:
        return

    cursor.execute('''
        SELECT design, lot_number, SUM(quantity) AS total
        FROM stock_movements
        WHERE order_id = ? AND status = 'COMPLETED'
        GROUP BY design, lot_number
    ''', (order_id,))
    totals = {(r['design'], r['lot_number']): int(r['total'] or 0) for r in cursor.fetchall()}

    all_fulfilled = True
    for item in items:
        fulfilled = totals.get((item['design'], item['lot_number']), 0)
        if fulfilled >= item['quantity']:
            status = 'FULFILLED'
        elif fulfilled > 0:
            status = 'PARTIALLY_FULFILLED'
        else:
            status = 'PENDING'
        if status != 'FULFILLED':
            all_fulfilled = False
        update_order_item_status(cursor, item['id'], status, fulfilled)

    if all_fulfilled:
        now = _now()
        cursor.execute(
            "UPDATE orders SET status = 'COMPLETED', updated_at = ?, completed_at = ? WHERE id = ? AND status = 'PENDING'",
            (now, now, order_id),
        )


def update_order_after_stock(order_id: str) -> Optional[Dict[str, Any]]:
    conn = get_db_connection()
    cursor = conn.cursor()
    _update_order_after_stock(cursor, order_id)
    conn.commit()
    conn.close()
    return get_order_by_id(order_id)


def get_stock_movements(user_id: str = None, order_id: str = None, status: str = None,
                        limit: int = None, offset: int = None) -> List[Dict[str, Any]]:
    where = []
    params: List[Any] = []
    if user_id:
        where.append('created_by = ?')
        params.append(user_id)
    if order_id:
        where.append('order_id = ?')
        params.append(order_id)
    if status:
        where.append('status = ?')
        params.append(status)

    sql = 'SELECT * FROM stock_movements'
    if where:
        sql += ' WHERE ' + ' AND '.join(where)
    sql += ' ORDER BY created_at DESC, rowid DESC'
    if limit or offset:
        sql += ' LIMIT ? OFFSET ?'
        params.extend([int(limit) if limit else 10, int(offset or 0)])

    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute(sql, params)
    movements = [_movement_row(r) for r in cursor.fetchall()]
    conn.close()
    return movements


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_database()
