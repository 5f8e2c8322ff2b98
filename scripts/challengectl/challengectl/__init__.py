"""challengectl - admin CLI for the Challenge Deployer."""
