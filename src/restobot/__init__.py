"""Restaurant table-booking voice bot for jambonz WebSocket calls."""
