"""
Services Package

Long-running parts of the runtime. Each is a Subsystem with start/stop
lifecycle, addressed by name through the SubsystemFacade:

    dispatch          - services.dispatcher.Dispatcher
    internet_monitor  - services.connection.ConnectionMonitor
    ntp_timekeeper    - services.timekeeper.NTPManager
    database          - services.database.DatabaseManager
    communications    - services.communications.CommunicationsManager
    exchange_syncer   - services.exchange_syncer.ExchangeSyncer
    portfolio         - services.portfolio.PortfolioManager
    orders            - services.order_manager.OrderManager
    gctscript         - services.scripting.ScriptManager

services.market_data holds the ticker/orderbook/holdings registries and
services.engine wires everything together.
"""
