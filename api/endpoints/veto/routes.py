from endpoints.veto.vetoEndpoints import VetoEndpoints

def setup_routes(app, engine, notifier=None, expose_errors=False, **model_kwargs):

    vetoEndpoints = VetoEndpoints(engine, notifier=notifier, expose_errors=expose_errors, **model_kwargs)

    # Cast a veto/approve vote while an accepted trade is under review
    app.add_url_rule(
        "/api/trade/<int:trade_id>/vote",
        view_func=vetoEndpoints.cast_vote,
        methods=["POST"],
    )

    app.add_url_rule(
        "/api/trade/<int:trade_id>/votes",
        view_func=vetoEndpoints.get_votes,
        methods=["GET"],
    )
