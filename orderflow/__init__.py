"""
orderflow - order placement across independently-owned services.

order-service ──HTTP──▶ product-service          (synchronous stock check)
      │
      └── order_events ──▶ product_stock_update    (stock decrement)
                       └─▶ mail_notification       (notification)
"""

__version__ = "0.1.0"
