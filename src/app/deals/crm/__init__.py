"""CRM integration layer -- gateway interface and the Bitrix24 implementation.

- CRMGateway (adapter.py): abstract deal operations consumed by the reconciler.
- BitrixGateway (bitrix.py): Bitrix24 REST implementation over an incoming webhook.
- field_mapping.py: Bitrix field codes, stage tables and list-field enum ids.

Modules are imported directly (``src.app.deals.crm.bitrix``) because the
deal schemas depend on the field codes defined here.
"""
