"""SimpleReader: feed synchronization with a chat front end."""
