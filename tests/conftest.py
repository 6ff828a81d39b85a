import os
import sys

# Keep the background sweeper and any default store path out of the user's home
os.environ.setdefault("RELGRAPH_MUTATION_SWEEPER_ENABLED", "false")

# Add src directory to Python path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))
