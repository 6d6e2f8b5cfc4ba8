from endpoints.waiver.waiverEndpoints import WaiverEndpoints

def setup_routes(app, engine, notifier=None, expose_errors=False, **model_kwargs):

    waiverEndpoints = WaiverEndpoints(engine, notifier=notifier, expose_errors=expose_errors, **model_kwargs)

    app.add_url_rule(
        "/api/league/<int:league_id>/waiver/claim",
        view_func=waiverEndpoints.submit_claim,
        methods=["POST"],
    )

    app.add_url_rule(
        "/api/waiver/claim/<int:claim_id>/cancel",
        view_func=waiverEndpoints.cancel_claim,
        methods=["POST"],
    )

    # Run the waiver batch now (commissioner only)
    app.add_url_rule(
        "/api/league/<int:league_id>/waiver/process",
        view_func=waiverEndpoints.process_waivers,
        methods=["POST"],
    )
