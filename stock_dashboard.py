#!/usr/bin/env python3
"""
Stock API for Local Access
JSON endpoints for order intake and warehouse stock-out sessions
"""

from flask import Flask, jsonify, request, send_file, session, abort
import logging
import os
import uuid
from typing import Optional

from authz import (
    check_password as _check_password,
    clear_role as _clear_role,
    current_role as _current_role,
    current_user as _current_user,
    is_auth_enabled as _is_auth_enabled,
    require_role as _require_role,
    set_role as _set_role,
)
import database_schema
from image_store import ImageStoreConfig, StockImageStore

app = Flask(__name__)
app.secret_key = os.environ.get('WALLPAPER_SECRET_KEY') or 'wallpaper-stock-dev'
app.config['MAX_CONTENT_LENGTH'] = int(os.environ.get('WALLPAPER_MAX_UPLOAD_MB', '16')) * 1024 * 1024

_image_store: Optional[StockImageStore] = None
_db_ready = False


def get_image_store() -> StockImageStore:
    global _image_store
    if _image_store is None:
        _image_store = StockImageStore(ImageStoreConfig(
            upload_dir=os.environ.get('WALLPAPER_UPLOAD_DIR', 'uploads/stock'),
            remote_url=(os.environ.get('WALLPAPER_STORAGE_URL') or '').strip() or None,
            remote_token=(os.environ.get('WALLPAPER_STORAGE_TOKEN') or '').strip() or None,
        ))
    return _image_store


def set_image_store(store: Optional[StockImageStore]) -> None:
    global _image_store
    _image_store = store


@app.before_request
def _ensure_db():
    global _db_ready
    if not _db_ready:
        database_schema.init_database()
        _db_ready = True


def _user_id() -> str:
    return _current_user(session, request.headers)


def _int_arg(name: str) -> Optional[int]:
    raw = request.args.get(name)
    if raw in (None, ''):
        return None
    try:
        return int(raw)
    except ValueError:
        return None


# ============================================================
# Auth
# ============================================================

@app.route('/api/auth/status', methods=['GET'])
def auth_status():
    return jsonify({
        'auth_enabled': _is_auth_enabled(),
        'role': _current_role(session),
    })


@app.route('/api/auth/login', methods=['POST'])
def auth_login():
    data = request.get_json(silent=True) or {}
    ok, role = _check_password(data.get('password', ''))
    if not ok:
        return jsonify({'error': 'Invalid password'}), 401
    _set_role(session, role, user=(data.get('user') or request.headers.get('X-User-Id') or role))
    logging.info("Login as %s", role)
    return jsonify({'success': True, 'role': role})


@app.route('/api/auth/logout', methods=['POST'])
def auth_logout():
    _clear_role(session)
    return jsonify({'success': True})


# ============================================================
# Orders
# ============================================================

@app.route('/api/orders', methods=['GET'])
@_require_role('staff')
def list_orders():
    try:
        orders = database_schema.get_orders(
            status=request.args.get('status') or None,
            customer_name=request.args.get('customerName') or None,
            limit=_int_arg('limit'),
            offset=_int_arg('offset'),
        )
        return jsonify({'orders': orders})
    except Exception as e:
        logging.error(f"Error fetching orders: {e}")
        return jsonify({'error': 'Failed to fetch orders'}), 500


@app.route('/api/orders', methods=['POST'])
@_require_role('staff')
def create_order():
    data = request.get_json(silent=True) or {}
    try:
        order = database_schema.create_order(
            data.get('customerName'),
            data.get('orderDetails'),
            user_id=_user_id(),
        )
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logging.error(f"Error creating order: {e}")
        return jsonify({'error': 'Failed to create order'}), 500

    return jsonify({
        'success': True,
        'order': order,
        'message': f"Order #{order['order_number']} created successfully",
    }), 201


@app.route('/api/orders/next-id', methods=['GET'])
@_require_role('staff')
def next_order_id():
    try:
        return jsonify({'orderNumber': database_schema.get_next_order_number()})
    except Exception as e:
        logging.error(f"Error fetching next order number: {e}")
        return jsonify({'error': 'Failed to fetch next order number'}), 500


@app.route('/api/orders/<order_id>', methods=['GET'])
@_require_role('staff')
def get_order(order_id):
    order = database_schema.get_order_by_id(order_id)
    if not order:
        return jsonify({'error': 'Order not found'}), 404
    return jsonify({'order': order})


@app.route('/api/orders/<order_id>/cancel', methods=['POST'])
@_require_role('admin')
def cancel_order(order_id):
    try:
        order = database_schema.cancel_order(order_id)
    except LookupError:
        return jsonify({'error': 'Order not found'}), 404
    except Exception as e:
        logging.error(f"Error cancelling order: {e}")
        return jsonify({'error': 'Failed to cancel order'}), 500
    return jsonify({'success': True, 'order': order})


# ============================================================
# Scan sessions
# ============================================================

@app.route('/api/stock/scan-session/start', methods=['POST'])
@_require_role('staff')
def scan_session_start():
    """Hand out a session id and the order's demand snapshot (null = custom order)."""
    data = request.get_json(silent=True) or {}
    session_id = (data.get('sessionId') or '').strip() or str(uuid.uuid4())
    order_id = data.get('orderId') or None

    snapshot = None
    if order_id:
        try:
            order = database_schema.require_open_order(order_id)
        except LookupError:
            return jsonify({'error': 'Order not found'}), 404
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        snapshot = database_schema.snapshot_from_order(order).to_dict()

    logging.info("Scan session %s started by %s (order=%s)", session_id, _user_id(), order_id or 'custom')
    return jsonify({
        'success': True,
        'message': 'Scan session started',
        'sessionId': session_id,
        'snapshot': snapshot,
    })


@app.route('/api/stock/scan-session/batch', methods=['POST'])
@_require_role('staff')
def scan_session_batch():
    data = request.get_json(silent=True) or {}
    session_id = data.get('sessionId')
    items = data.get('scannedItems')
    if not session_id:
        return jsonify({'error': 'Session ID is required'}), 400
    if not items or not isinstance(items, list):
        return jsonify({'error': 'Scanned items are required'}), 400

    try:
        count = database_schema.save_scanned_batch(session_id, _user_id(), data.get('orderId') or None, items)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logging.error(f"Error processing batch scan: {e}")
        return jsonify({'error': 'Failed to save scanned items'}), 500

    return jsonify({
        'success': True,
        'message': f"Successfully saved {count} items",
        'count': count,
    })


@app.route('/api/stock/scan-session/items', methods=['GET'])
@_require_role('staff')
def scan_session_items():
    session_id = request.args.get('sessionId')
    if not session_id:
        return jsonify({'error': 'Session ID is required'}), 400
    try:
        return jsonify({'items': database_schema.get_scanned_items(session_id)})
    except Exception as e:
        logging.error(f"Error fetching scanned items: {e}")
        return jsonify({'error': 'Failed to fetch scanned items'}), 500


@app.route('/api/stock/scan-session/clear', methods=['DELETE'])
@_require_role('staff')
def scan_session_clear():
    session_id = request.args.get('sessionId')
    if not session_id:
        return jsonify({'error': 'Session ID is required'}), 400
    try:
        removed = database_schema.clear_scan_session(session_id)
    except Exception as e:
        logging.error(f"Error clearing session: {e}")
        return jsonify({'error': 'Failed to clear session'}), 500
    return jsonify({'success': True, 'message': 'Session cleared successfully', 'removed': removed})


@app.route('/api/stock/scan-session/submit', methods=['POST'])
@_require_role('staff')
def scan_session_submit():
    data = request.get_json(silent=True) or {}
    session_id = data.get('sessionId')
    invoice_number = (data.get('invoiceNumber') or '').strip()
    if not session_id:
        return jsonify({'error': 'Session ID is required'}), 400
    if not invoice_number:
        return jsonify({'error': 'Invoice number is required'}), 400

    order_id = data.get('orderId') or None
    try:
        database_schema.check_submission(session_id, order_id)
    except LookupError:
        return jsonify({'error': 'Order not found'}), 404
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    image_url = None
    if data.get('imageBase64'):
        try:
            image_url = get_image_store().save(data['imageBase64'])
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        except Exception as e:
            logging.error(f"Error uploading image: {e}")
            return jsonify({'error': 'Failed to upload image'}), 500

    try:
        movements = database_schema.create_stock_movement(
            session_id,
            _user_id(),
            order_id,
            invoice_number,
            image_url,
            data.get('movementType') or 'OUT',
        )
    except LookupError:
        get_image_store().discard(image_url)
        return jsonify({'error': 'Order not found'}), 404
    except ValueError as e:
        get_image_store().discard(image_url)
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        get_image_store().discard(image_url)
        logging.error(f"Error submitting stock movement: {e}")
        return jsonify({'error': 'Failed to submit stock movement'}), 500

    return jsonify({
        'success': True,
        'message': f"Stock movement completed. {len(movements)} item(s) processed.",
        'movements': movements,
        'imageUrl': image_url,
    })


@app.route('/api/stock/movements', methods=['GET'])
@_require_role('staff')
def stock_movements():
    try:
        movements = database_schema.get_stock_movements(
            order_id=request.args.get('orderId') or None,
            status=request.args.get('status') or None,
            limit=_int_arg('limit'),
            offset=_int_arg('offset'),
        )
        return jsonify({'movements': movements})
    except Exception as e:
        logging.error(f"Error fetching stock movements: {e}")
        return jsonify({'error': 'Failed to fetch stock movements'}), 500


@app.route('/api/uploads/stock/<path:filename>', methods=['GET'])
@_require_role('staff')
def stock_upload(filename):
    path = get_image_store().local_path(filename)
    if path is None:
        abort(404)
    return send_file(str(path))


def start_web_server(host=None, port=5010, debug=False):
    """Start the stock API server"""
    if host is None:
        host = os.environ.get('WALLPAPER_BIND_HOST', '0.0.0.0')
    database_schema.init_database()
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    start_web_server(port=int(os.environ.get('WALLPAPER_PORT', '5010')))
