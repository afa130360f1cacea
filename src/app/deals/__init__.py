"""Deal sync module -- maps Shopify orders onto Bitrix24 deals.

Provides Pydantic schemas for Shopify payloads and CRM records, the pure
order-to-deal mapper and stage/status policy, the OrderReconciler that keeps
one deal per order, and the catalog webhook stub.
"""
