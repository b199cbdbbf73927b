# Services Module for ShillMarket
# Contains the order pipeline business logic:
#   order_service         - order state machine
#   dispatch_scheduler    - delayed job dispatch
#   verification_service  - verification job processor
#   reconciliation        - ledger vs order consistency pass
# Submodules are imported directly; core clients depend on services.exceptions.
