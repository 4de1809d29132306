"""
Stock ledger package.

Append-only movement ledger with derived per-(store, product) stock levels
and weighted-average costs (CUMP):
  - movements       Tagged movement variants + sign/field validation
  - projector       Pure StockLevel transitions (apply, reserve)
  - costing         CUMP and valuation helpers
  - repository      Storage protocol + in-memory implementation
  - sql_repository  Async SQLAlchemy implementation
  - service         StockLedger facade (append, query, reservations)

Usage:
    from ledger.repository import InMemoryLedgerRepository
    from ledger.service import StockLedger

    ledger = StockLedger(InMemoryLedgerRepository())
    result = await ledger.record_arrival(
        store_id="store-1", product_id="tuna", quantity=20, unit_cost=14.5, recorded_by="mgr-1"
    )
"""
