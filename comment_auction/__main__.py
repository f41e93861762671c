from comment_auction.main import run

run()
