"""
ACP Agent Tools — @function_tool wrappers for OpenAI Agents SDK.

These tools let an OpenAI Agent shop through an `ACPCheckoutClient`:
browse the catalog, build a cart, provide buyer and shipping details,
and pay. The client holds the cart, so one client serves one shopper.

Usage with OpenAI Agents SDK:
    from agents import Agent
    from acp_protocol.agent import create_commerce_tools
    from acp_protocol.client import ACPCheckoutClient

    tools = create_commerce_tools(ACPCheckoutClient())
    agent = Agent(name="shopper", tools=tools, instructions="...")
"""

from __future__ import annotations

from typing import Optional

from agents import function_tool
from pydantic import BaseModel

from acp_protocol.client import ACPCheckoutClient
from acp_protocol.models import Address, Buyer, Item, PaymentMethodCard


def _dump(model: Optional[BaseModel]) -> dict:
    if model is None:
        return {}
    return model.model_dump(mode="json", exclude_none=True)


def create_commerce_tools(client: ACPCheckoutClient) -> list:
    """
    Create a list of @function_tool-decorated functions that an OpenAI
    Agent can use to search products and manage an ACP checkout.
    """

    @function_tool
    async def search_products(query: str, max_results: int = 5) -> dict:
        """
        Search the merchant's product catalog by keyword.

        Args:
            query: Search query (e.g. "wireless headphones")
            max_results: Maximum number of products to return (default 5)

        Returns:
            Matching products with id, name, price in cents and stock.
        """
        return _dump(await client.search_products(query, max_results))

    @function_tool
    async def get_product_details(product_id: str) -> dict:
        """Get full product details by ID."""
        return _dump(await client.get_product(product_id))

    @function_tool
    async def add_to_cart(product_id: str, quantity: int = 1) -> dict:
        """
        Add a product to the cart, starting a checkout session if needed.

        Args:
            product_id: The product ID to add
            quantity: Number of units to add

        Returns:
            The checkout session with line items, totals and messages.
        """
        return _dump(await client.add_items([Item(id=product_id, quantity=quantity)]))

    @function_tool
    async def remove_from_cart(product_id: str) -> dict:
        """Remove a product from the cart. Removing the last product cancels the checkout."""
        return _dump(await client.remove_item(product_id))

    @function_tool
    async def view_cart() -> dict:
        """Get the current state of the checkout session."""
        if client.session is None:
            return {}
        return _dump(await client.refresh_session())

    @function_tool
    async def set_buyer_info(
        first_name: str,
        last_name: str,
        email: str,
        phone_number: str = "",
    ) -> dict:
        """
        Attach the buyer's contact details to the checkout.

        Args:
            first_name: Buyer's first name
            last_name: Buyer's last name
            email: Buyer's email address
            phone_number: Optional phone number in E.164 format (e.g. +15551234567)
        """
        buyer = Buyer(
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone_number=phone_number or None,
        )
        return _dump(await client.set_buyer(buyer))

    @function_tool
    async def set_shipping_address(
        name: str,
        line_one: str,
        city: str,
        state: str,
        postal_code: str,
        country: str = "US",
        line_two: str = "",
    ) -> dict:
        """
        Set the shipping address; the response lists the available
        fulfillment options.

        Args:
            name: Recipient name
            line_one: Street address
            city: City
            state: State/province code (e.g. CA)
            postal_code: ZIP/postal code
            country: Country code (default US)
            line_two: Apartment, suite, etc.
        """
        address = Address(
            name=name,
            line_one=line_one,
            line_two=line_two or None,
            city=city,
            state=state,
            country=country,
            postal_code=postal_code,
        )
        return _dump(await client.set_fulfillment_address(address))

    @function_tool
    async def select_shipping_option(fulfillment_option_id: str) -> dict:
        """Select one of the session's fulfillment options by ID."""
        return _dump(await client.select_fulfillment_option(fulfillment_option_id))

    @function_tool
    async def checkout(
        card_number: str,
        exp_month: str,
        exp_year: str,
        cvc: str,
        cardholder_name: str,
    ) -> dict:
        """
        Pay for the cart. The card is delegated to the payment provider for
        a single-use token capped at the session total, then the checkout
        is completed with that token.

        Returns:
            The completed checkout session including the order.
        """
        number = card_number.replace(" ", "")
        card = PaymentMethodCard(
            card_number_type="fpan",
            number=number,
            exp_month=exp_month,
            exp_year=exp_year,
            cvc=cvc,
            name=cardholder_name,
            display_card_funding_type="credit",
            display_last4=number[-4:],
            metadata={},
        )
        return _dump(await client.checkout(card))

    @function_tool
    async def cancel_checkout() -> dict:
        """Cancel the active checkout session."""
        return _dump(await client.cancel_session())

    return [
        search_products,
        get_product_details,
        add_to_cart,
        remove_from_cart,
        view_cart,
        set_buyer_info,
        set_shipping_address,
        select_shipping_option,
        checkout,
        cancel_checkout,
    ]
