from endpoints.transaction.transactionEndpoints import TransactionEndpoints

def setup_routes(app, engine, notifier=None, expose_errors=False, **model_kwargs):

    transactionEndpoints = TransactionEndpoints(
        engine, notifier=notifier, expose_errors=expose_errors, **model_kwargs
    )

    # Propose a trade (creates a PENDING Trade with its items)
    app.add_url_rule(
        "/api/league/<int:league_id>/trade/propose",
        view_func=transactionEndpoints.propose_trade,
        methods=["POST"],
    )

    # Accept / reject / counter as a counterparty
    app.add_url_rule(
        "/api/trade/<int:trade_id>/respond",
        view_func=transactionEndpoints.respond_trade,
        methods=["POST"],
    )

    # Cancel your own pending proposal
    app.add_url_rule(
        "/api/trade/<int:trade_id>/cancel",
        view_func=transactionEndpoints.cancel_trade,
        methods=["POST"],
    )

    app.add_url_rule(
        "/api/trade/<int:trade_id>",
        view_func=transactionEndpoints.get_trade,
        methods=["GET"],
    )

    app.add_url_rule(
        "/api/league/<int:league_id>/trades/open",
        view_func=transactionEndpoints.get_open_trades,
        methods=["GET"],
    )
