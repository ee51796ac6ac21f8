"""REST routers, one per resource."""
from . import admin, auth, cart, content, coupons, orders, payments, products, reviews, users, webhooks

ROUTERS = [
    auth.router,
    products.router,
    orders.router,
    cart.router,
    users.router,
    reviews.router,
    coupons.router,
    payments.router,
    webhooks.router,
    admin.router,
    content.router,
]
