from typing import Dict, List, Optional

import stripe

from catalog import CatalogStore, LineItem, aggregate_quantities
from errors import InsufficientStock, PaymentProviderError
from helpers import safe_float


def price_line_items(
    catalog: CatalogStore, line_items: List[LineItem], currency: str
) -> List[Dict[str, object]]:
    """Check requested quantities against stock and build Stripe line items.

    The first shortfall aborts the whole request, before any call to the
    payment provider is made.
    """
    requested = aggregate_quantities(line_items)
    priced: List[Dict[str, object]] = []
    for item in line_items:
        product_document = catalog.get_product(item.product_id)
        in_stock = int(product_document.get("qtt_in_stock") or 0)
        if requested[item.product_id] > in_stock:
            raise InsufficientStock(
                product_id=str(item.product_id),
                requested=requested[item.product_id],
                available=in_stock,
            )

        product_data: Dict[str, object] = {"name": product_document.get("model") or "Item"}
        images = product_document.get("image_url") or []
        if images:
            product_data["images"] = [images[0]]

        priced.append(
            {
                "price_data": {
                    "currency": currency,
                    "product_data": product_data,
                    "unit_amount": int(round(safe_float(product_document.get("price"), 0.0) * 100)),
                },
                "quantity": item.qtt,
            }
        )
    return priced


class StripeCheckout:
    def __init__(
        self,
        secret_key: Optional[str],
        client_url: str,
        logger,
        stripe_client=stripe,
    ):
        self.secret_key = (secret_key or "").strip()
        self.client_url = (client_url or "").rstrip("/")
        self.logger = logger
        self._stripe = stripe_client

    def create_session(self, line_items: List[Dict[str, object]]) -> Dict[str, object]:
        if not self.secret_key:
            raise PaymentProviderError("Stripe configuration is incomplete. Please contact support.")

        try:
            session = self._stripe.checkout.Session.create(
                api_key=self.secret_key,
                payment_method_types=["card"],
                line_items=line_items,
                mode="payment",
                success_url=f"{self.client_url}/order/success",
                cancel_url=f"{self.client_url}/order/canceled",
            )
        except stripe.StripeError as exc:
            self.logger.error(
                "Stripe checkout failed (%s): %s",
                getattr(exc, "http_status", None) or type(exc).__name__,
                getattr(exc, "user_message", None) or str(exc),
            )
            raise PaymentProviderError() from exc

        if not session or not session.get("id"):
            self.logger.error("Stripe checkout response carried no session id: %s", session)
            raise PaymentProviderError()

        self.logger.info(
            "Created Stripe checkout session %s for %s line items",
            session["id"],
            len(line_items),
        )
        return session
